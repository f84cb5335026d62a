import json
from typing import Any, Dict, List, Optional

import pytest
import requests

from forge_backup.errors import FetchError


def repo_payload(full_name: str, **extra: Any) -> Dict[str, Any]:
    owner, name = full_name.split("/", 1)
    payload = {
        "id": abs(hash(full_name)) % 100000,
        "name": name,
        "full_name": full_name,
        "clone_url": f"https://github.com/{full_name}.git",
        "owner": {"login": owner},
    }
    payload.update(extra)
    return payload


def make_response(
    status: int = 200,
    payload: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(payload if payload is not None else []).encode("utf-8")
    response.encoding = "utf-8"
    response.headers.update(headers or {})
    return response


class FakeAPI:
    """In-memory stand-in for GitHubAPI keyed by login and organization."""

    def __init__(
        self,
        owned: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        starred: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        members: Optional[Dict[str, List[str]]] = None,
        me: str = "me",
        failing_users: Optional[set] = None,
    ) -> None:
        self.owned = owned or {}
        self.starred = starred or {}
        self.members = members or {}
        self.me = me
        self.failing_users = failing_users or set()
        self.calls: List[tuple] = []

    def get_user(self, login: Optional[str] = None) -> Dict[str, Any]:
        self.calls.append(("get_user", login))
        if login in self.failing_users:
            raise FetchError(f"GET users/{login} returned 404: Not Found", status_code=404)
        return {"login": login or self.me}

    def list_user_repositories(self, login: str) -> List[Dict[str, Any]]:
        self.calls.append(("list_user_repositories", login))
        return list(self.owned.get(login, []))

    def list_authenticated_user_repositories(self) -> List[Dict[str, Any]]:
        self.calls.append(("list_authenticated_user_repositories", None))
        return list(self.owned.get(self.me, []))

    def list_starred(self, login: str) -> List[Dict[str, Any]]:
        self.calls.append(("list_starred", login))
        return list(self.starred.get(login, []))

    def list_org_members(self, org: str) -> List[Dict[str, Any]]:
        self.calls.append(("list_org_members", org))
        if org not in self.members:
            raise FetchError(f"GET orgs/{org}/members returned 404: Not Found", status_code=404)
        return [{"login": login} for login in self.members[org]]


@pytest.fixture
def fake_api():
    return FakeAPI(
        owned={
            "me": [repo_payload("me/dotfiles")],
            "alice": [repo_payload("alice/one"), repo_payload("alice/two")],
            "bob": [repo_payload("bob/tool"), repo_payload("acme/shared")],
            "carol": [repo_payload("carol/site"), repo_payload("acme/shared")],
        },
        starred={"alice": [repo_payload("bob/tool"), repo_payload("torvalds/linux")]},
        members={"acme": ["bob", "carol"]},
    )
