import io
import json
import threading
import time
from unittest.mock import MagicMock

import pytest
import requests

from conftest import FakeAPI, repo_payload
from forge_backup.config import BackupConfig
from forge_backup.errors import CloneError, FetchError, InvalidRunTypeError, NotificationError
from forge_backup.github.api import GitHubAPI
from forge_backup.github.clone import RepositoryCloneError
from forge_backup.orchestrator import BackupExecutor, CloneProgress, resolve_targets


def fake_clone(url, destination, username, password, recurse_submodules=False):
    destination.mkdir(parents=True)
    (destination / "README").write_text(url)


def make_executor(api, cloner=fake_clone, notifier=None, stdout=None):
    return BackupExecutor(
        api_factory=lambda config: api,
        cloner=cloner,
        notifier=notifier or MagicMock(),
        stdout=stdout or io.StringIO(),
    )


# ---- Target resolution -------------------------------------------------------


def test_org_members_replace_authenticated_user(fake_api):
    targets = resolve_targets(fake_api, BackupConfig(in_org=["acme"]))
    assert [t.login for t in targets] == ["bob", "carol"]


def test_empty_targets_mean_authenticated_user(fake_api):
    targets = resolve_targets(fake_api, BackupConfig())
    assert len(targets) == 1
    assert targets[0].is_authenticated


def test_targets_are_unique_in_order(fake_api):
    targets = resolve_targets(fake_api, BackupConfig(in_org=["acme"], usernames=["carol", "alice"]))
    assert [t.login for t in targets] == ["bob", "carol", "alice"]


# ---- Discovery -----------------------------------------------------------------


def test_org_expansion_fetches_members_not_self(fake_api, tmp_path):
    stdout = io.StringIO()
    config = BackupConfig(in_org=["acme"], run_type="dry-run", output=tmp_path)

    make_executor(fake_api, stdout=stdout).run(config)

    fetched = [call[1] for call in fake_api.calls if call[0] == "get_user"]
    assert fetched == ["bob", "carol"]
    assert not any(call[0] == "list_authenticated_user_repositories" for call in fake_api.calls)
    names = [repo["full_name"] for repo in json.loads(stdout.getvalue())]
    assert names == ["bob/tool", "acme/shared", "carol/site"]


def test_org_expansion_failure_aborts_before_fetching(fake_api, tmp_path):
    config = BackupConfig(in_org=["acme", "unknown"], usernames=["alice"], output=tmp_path)
    cloner = MagicMock()

    with pytest.raises(FetchError):
        make_executor(fake_api, cloner=cloner).run(config)

    assert not any(call[0] == "get_user" for call in fake_api.calls)
    cloner.assert_not_called()


def test_fetch_failure_aborts_run(fake_api, tmp_path):
    fake_api.failing_users.add("ghost")
    cloner = MagicMock()
    config = BackupConfig(usernames=["alice", "ghost"], output=tmp_path)

    with pytest.raises(FetchError):
        make_executor(fake_api, cloner=cloner).run(config)

    cloner.assert_not_called()
    assert list(tmp_path.iterdir()) == []


def test_starred_repositories_are_merged_and_deduplicated(fake_api, tmp_path):
    stdout = io.StringIO()
    config = BackupConfig(usernames=["alice", "bob"], backup_stars=True, run_type="dry-run", output=tmp_path)

    make_executor(fake_api, stdout=stdout).run(config)

    names = [repo["full_name"] for repo in json.loads(stdout.getvalue())]
    assert names == ["alice/one", "alice/two", "bob/tool", "torvalds/linux", "acme/shared"]


# ---- Run modes -----------------------------------------------------------------


def test_fetch_writes_repositories_json_in_directory(fake_api, tmp_path):
    output = tmp_path / "out"
    config = BackupConfig(usernames=["alice"], run_type="fetch", output=output)

    make_executor(fake_api).run(config)

    written = json.loads((output / "repositories.json").read_text(encoding="utf-8"))
    assert [repo["full_name"] for repo in written] == ["alice/one", "alice/two"]
    assert written[0]["owner"]["login"] == "alice"
    assert written[0]["clone_url"] == "https://github.com/alice/one.git"


def test_fetch_writes_to_explicit_json_file(fake_api, tmp_path):
    output = tmp_path / "lists" / "mine.json"
    config = BackupConfig(run_type="fetch", output=output)

    make_executor(fake_api).run(config)

    assert json.loads(output.read_text(encoding="utf-8"))[0]["full_name"] == "me/dotfiles"
    assert (output.read_text(encoding="utf-8")).startswith("[\n  {")


def test_dry_run_prints_and_touches_nothing(fake_api, tmp_path):
    stdout = io.StringIO()
    cloner = MagicMock()
    output = tmp_path / "never"
    config = BackupConfig(usernames=["alice"], run_type="dry-run", output=output)

    make_executor(fake_api, cloner=cloner, stdout=stdout).run(config)

    assert [repo["full_name"] for repo in json.loads(stdout.getvalue())] == ["alice/one", "alice/two"]
    assert not output.exists()
    cloner.assert_not_called()


def test_invalid_run_type(fake_api, tmp_path):
    with pytest.raises(InvalidRunTypeError, match="sync"):
        make_executor(fake_api).run(BackupConfig(run_type="sync", output=tmp_path))
    assert fake_api.calls == []


# ---- Clone phase -----------------------------------------------------------------


def test_clone_uses_token_as_username_and_password(fake_api, tmp_path):
    cloner = MagicMock()
    config = BackupConfig(usernames=["alice"], token="tok", output=tmp_path, recurse_submodules=True)

    make_executor(fake_api, cloner=cloner).run(config)

    assert cloner.call_count == 2
    calls = {call.args[1]: call.args for call in cloner.call_args_list}
    url, destination, username, password, recurse = calls[tmp_path / "alice" / "one"]
    assert url == "https://github.com/alice/one.git"
    assert username == password == "tok"
    assert recurse is True


def test_clone_failure_does_not_stop_siblings(tmp_path):
    repos = [repo_payload(f"owner/repo{i}") for i in range(1, 6)]
    api = FakeAPI(owned={"owner": repos})

    def flaky_clone(url, destination, username, password, recurse_submodules=False):
        if destination.name == "repo3":
            raise RepositoryCloneError("git clone of repo3 failed")
        fake_clone(url, destination, username, password)

    config = BackupConfig(usernames=["owner"], output=tmp_path)

    with pytest.raises(CloneError) as excinfo:
        make_executor(api, cloner=flaky_clone).run(config)

    assert list(excinfo.value.failures) == ["owner/repo3"]
    assert "owner/repo3" in str(excinfo.value)
    for i in (1, 2, 4, 5):
        assert (tmp_path / "owner" / f"repo{i}" / "README").exists()
    assert not (tmp_path / "owner" / "repo3").exists()


def test_clone_tasks_run_concurrently(tmp_path):
    repos = [repo_payload(f"owner/repo{i}") for i in range(4)]
    api = FakeAPI(owned={"owner": repos})
    barrier = threading.Barrier(4, timeout=5)

    def waiting_clone(url, destination, username, password, recurse_submodules=False):
        # Only passes if all four clones are in flight together.
        barrier.wait()

    make_executor(api, cloner=waiting_clone).run(BackupConfig(usernames=["owner"], output=tmp_path))


def test_max_workers_bounds_concurrency(tmp_path):
    repos = [repo_payload(f"owner/repo{i}") for i in range(6)]
    api = FakeAPI(owned={"owner": repos})
    lock = threading.Lock()
    active = {"now": 0, "peak": 0}

    def counting_clone(url, destination, username, password, recurse_submodules=False):
        with lock:
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
        time.sleep(0.02)
        with lock:
            active["now"] -= 1

    config = BackupConfig(usernames=["owner"], output=tmp_path, max_workers=2)
    make_executor(api, cloner=counting_clone).run(config)

    assert active["peak"] <= 2


def test_clone_with_nothing_to_clone(tmp_path):
    api = FakeAPI(owned={"me": []})
    cloner = MagicMock()
    make_executor(api, cloner=cloner).run(BackupConfig(output=tmp_path))
    cloner.assert_not_called()


def test_clone_progress_counts_across_threads():
    progress = CloneProgress(total=50)

    def work(i):
        if i % 10 == 0:
            progress.record_failure(f"o/r{i}", RuntimeError("boom"))
        else:
            progress.record_success(f"o/r{i}")

    threads = [threading.Thread(target=work, args=(i,)) for i in range(50)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert progress.done == 50
    assert sorted(progress.failures) == ["o/r0", "o/r10", "o/r20", "o/r30", "o/r40"]


# ---- Notification ------------------------------------------------------------------


def test_notification_sent_after_success(fake_api, tmp_path):
    notifier = MagicMock()
    config = BackupConfig(run_type="dry-run", output=tmp_path, ntfy_url="https://ntfy.test/backups")

    make_executor(fake_api, notifier=notifier).run(config)

    notifier.assert_called_once()
    url, message = notifier.call_args.args
    assert url == "https://ntfy.test/backups"
    assert "successfully" in message


def test_notification_reports_failure_and_run_error_wins(fake_api, tmp_path):
    notifier = MagicMock(side_effect=NotificationError("unreachable"))
    config = BackupConfig(run_type="bogus", output=tmp_path, ntfy_url="https://ntfy.test/backups")

    with pytest.raises(InvalidRunTypeError):
        make_executor(fake_api, notifier=notifier).run(config)

    assert "failed" in notifier.call_args.args[1]


def test_notification_failure_is_a_run_error_by_default(fake_api, tmp_path):
    notifier = MagicMock(side_effect=NotificationError("unreachable"))
    config = BackupConfig(run_type="dry-run", output=tmp_path, ntfy_url="https://ntfy.test/backups")

    with pytest.raises(NotificationError):
        make_executor(fake_api, notifier=notifier).run(config)


def test_notification_failure_can_be_demoted(fake_api, tmp_path, caplog):
    notifier = MagicMock(side_effect=NotificationError("unreachable"))
    config = BackupConfig(
        run_type="dry-run",
        output=tmp_path,
        ntfy_url="https://ntfy.test/backups",
        notification_failure="warn",
    )

    with caplog.at_level("WARNING"):
        make_executor(fake_api, notifier=notifier).run(config)

    assert "unreachable" in caplog.text


def test_no_notification_without_url(fake_api, tmp_path):
    notifier = MagicMock()
    make_executor(fake_api, notifier=notifier).run(BackupConfig(run_type="dry-run", output=tmp_path))
    notifier.assert_not_called()


def test_non_json_api_response_still_sends_failure_notification(tmp_path):
    html = requests.Response()
    html.status_code = 200
    html._content = b"<html><body>Captive portal</body></html>"
    session = MagicMock()
    session.headers = {}
    session.get.return_value = html
    api = GitHubAPI("secret", base_url="https://forge.test/api", session=session, sleep=MagicMock())
    notifier = MagicMock()
    config = BackupConfig(output=tmp_path, ntfy_url="https://ntfy.test/backups")

    with pytest.raises(FetchError, match="not JSON"):
        make_executor(api, notifier=notifier).run(config)

    notifier.assert_called_once()
    assert "failed" in notifier.call_args.args[1]
    assert list(tmp_path.iterdir()) == []
