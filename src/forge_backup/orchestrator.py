from __future__ import annotations

import json
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, List, Optional, TextIO

from .config import RUN_TYPES, BackupConfig
from .errors import BackupError, BackupIOError, CloneError, InvalidRunTypeError, NotificationError
from .github import (
    GitHubAPI,
    RepositoryRef,
    Target,
    clone_repository,
    deduplicate,
    fetch_repositories,
    list_org_members,
)
from .notify import send_notification

LOG = logging.getLogger(__name__)

ApiFactory = Callable[[BackupConfig], GitHubAPI]
Cloner = Callable[..., None]
Notifier = Callable[..., None]

MANIFEST_NAME = "repositories.json"


def default_api_factory(config: BackupConfig) -> GitHubAPI:
    token = config.resolved_token()
    if not token:
        LOG.warning("No token configured; only public data is reachable and rate limits are low")
    return GitHubAPI(token, base_url=config.api_url)


class CloneProgress:
    """Thread-safe tally of finished clone tasks."""

    def __init__(self, total: int) -> None:
        self.total = total
        self._lock = threading.Lock()
        self._done = 0
        self._failures: Dict[str, str] = {}

    def record_success(self, full_name: str) -> int:
        with self._lock:
            self._done += 1
            done = self._done
        LOG.info("Cloned repository %s (%d/%d)", full_name, done, self.total)
        return done

    def record_failure(self, full_name: str, error: Exception) -> int:
        with self._lock:
            self._done += 1
            self._failures[full_name] = str(error)
            done = self._done
        LOG.error("Failed to clone %s (%d/%d): %s", full_name, done, self.total, error)
        return done

    @property
    def done(self) -> int:
        with self._lock:
            return self._done

    @property
    def failures(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._failures)


class BackupExecutor:
    """Runs one backup pass: discover, deduplicate, then clone, fetch or print."""

    def __init__(
        self,
        api_factory: ApiFactory = default_api_factory,
        cloner: Cloner = clone_repository,
        notifier: Notifier = send_notification,
        stdout: Optional[TextIO] = None,
    ) -> None:
        self._api_factory = api_factory
        self._cloner = cloner
        self._notifier = notifier
        self._stdout = stdout

    def run(self, config: BackupConfig) -> None:
        error: Optional[BackupError] = None
        try:
            self._run(config)
        except BackupError as exc:
            error = exc

        if config.ntfy_url:
            self._notify(config, error)
        if error is not None:
            raise error

    # Phases ----------------------------------------------------------------
    def _run(self, config: BackupConfig) -> None:
        if config.run_type not in RUN_TYPES:
            raise InvalidRunTypeError(
                f"Invalid run type: {config.run_type}; must be one of `clone`, `fetch`, or `dry-run`"
            )

        api = self._api_factory(config)
        repositories = self.discover(api, config)
        LOG.info("Deduplicated repositories: %d", len(repositories))

        if config.run_type == "clone":
            self.clone_all(repositories, config)
        elif config.run_type == "fetch":
            self.write_manifest(repositories, config.output)
        else:
            LOG.info("Dry run - printing repositories to console")
            stream = self._stdout or sys.stdout
            stream.write(_to_json(repositories) + "\n")
            stream.flush()

    def discover(self, api: GitHubAPI, config: BackupConfig) -> List[RepositoryRef]:
        targets = resolve_targets(api, config)
        combined: List[RepositoryRef] = []
        for target in targets:
            result = fetch_repositories(api, target, config.backup_stars)
            combined.extend(result.all())
        return deduplicate(combined)

    def clone_all(self, repositories: List[RepositoryRef], config: BackupConfig) -> None:
        if not repositories:
            LOG.warning("No repositories to clone")
            return

        token = config.resolved_token()
        progress = CloneProgress(len(repositories))
        workers = config.max_workers or len(repositories)
        LOG.info("Cloning %d repositories with %d workers", len(repositories), workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="clone") as pool:
            futures = {
                pool.submit(
                    self._cloner,
                    repo.clone_url,
                    config.output / repo.full_name,
                    token,
                    token,
                    config.recurse_submodules,
                ): repo
                for repo in repositories
            }
            for future in as_completed(futures):
                repo = futures[future]
                try:
                    future.result()
                except Exception as exc:  # noqa: BLE001
                    progress.record_failure(repo.full_name, exc)
                else:
                    progress.record_success(repo.full_name)

        failures = progress.failures
        if failures:
            raise CloneError(failures)

    def write_manifest(self, repositories: List[RepositoryRef], output: Path) -> Path:
        if output.suffix == ".json":
            target = output
            LOG.debug("Using specified output file %s", target)
        else:
            target = output / MANIFEST_NAME
            LOG.warning("Output is not a JSON file; writing %s in the output directory", target)

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(_to_json(repositories), encoding="utf-8")
        except OSError as exc:
            raise BackupIOError(f"Cannot write repository list to {target}: {exc}") from exc
        LOG.info("Fetched and saved list of repositories to %s", target)
        return target

    def _notify(self, config: BackupConfig, error: Optional[BackupError]) -> None:
        if error is None:
            message, tags = "Backup completed successfully", ["white_check_mark"]
        else:
            message, tags = f"Backup failed: {error}", ["warning"]

        try:
            self._notifier(config.ntfy_url, message, tags=tags, title="forge-backup")
        except NotificationError as exc:
            if error is not None or config.notification_failure == "warn":
                LOG.warning("Could not send notification: %s", exc)
                return
            raise


def resolve_targets(api: GitHubAPI, config: BackupConfig) -> List[Target]:
    """Org members then explicit usernames, first occurrence wins; the token owner if none."""
    logins: List[str] = []
    for org in config.in_org:
        logins.extend(list_org_members(api, org))
    logins.extend(config.usernames)

    targets: List[Target] = []
    seen = set()
    for login in logins:
        if login in seen:
            continue
        seen.add(login)
        targets.append(Target.user(login))
    return targets or [Target.authenticated()]


def run_backup(config: BackupConfig) -> None:
    BackupExecutor().run(config)


def _to_json(repositories: List[RepositoryRef]) -> str:
    return json.dumps([repo.to_dict() for repo in repositories], indent=2, ensure_ascii=False)
