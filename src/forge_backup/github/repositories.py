"""Repository discovery: targets, fetching, org expansion and deduplication."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from .api import GitHubAPI

LOG = logging.getLogger(__name__)


@dataclass(frozen=True)
class Target:
    """A backup target: either the token owner or a named user."""

    login: Optional[str] = None

    @classmethod
    def authenticated(cls) -> "Target":
        return cls(None)

    @classmethod
    def user(cls, login: str) -> "Target":
        if not login:
            raise ValueError("A user target needs a login")
        return cls(login)

    @property
    def is_authenticated(self) -> bool:
        return self.login is None

    def __str__(self) -> str:
        return self.login or "<authenticated user>"


@dataclass(frozen=True)
class RepositoryRef:
    full_name: str
    clone_url: str
    owner_login: str
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api(cls, payload: Mapping[str, Any]) -> "RepositoryRef":
        owner = payload.get("owner") or {}
        return cls(
            full_name=payload["full_name"],
            clone_url=payload.get("clone_url", ""),
            owner_login=owner.get("login", ""),
            raw=payload,
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.raw:
            return dict(self.raw)
        return {
            "full_name": self.full_name,
            "clone_url": self.clone_url,
            "owner": {"login": self.owner_login},
        }


@dataclass
class FetchResult:
    owned: List[RepositoryRef] = field(default_factory=list)
    starred: List[RepositoryRef] = field(default_factory=list)

    def all(self) -> Iterator[RepositoryRef]:
        yield from self.owned
        yield from self.starred


def fetch_repositories(api: GitHubAPI, target: Target, include_starred: bool) -> FetchResult:
    """List the repositories owned (and optionally starred) by ``target``.

    Any failed page raises ``FetchError`` from the API client; pages gathered
    before the failure are dropped with the local state.
    """
    user = api.get_user(target.login)
    login = user["login"]
    LOG.info("Fetching repositories for user %s", login)

    if target.is_authenticated:
        owned = api.list_authenticated_user_repositories()
    else:
        owned = api.list_user_repositories(login)
    result = FetchResult(owned=[RepositoryRef.from_api(repo) for repo in owned])
    LOG.debug("Fetched %d repositories owned by %s", len(result.owned), login)

    if include_starred:
        result.starred = [RepositoryRef.from_api(_unwrap_starred(entry)) for entry in api.list_starred(login)]
        LOG.debug("Fetched %d repositories starred by %s", len(result.starred), login)

    return result


def list_org_members(api: GitHubAPI, org: str) -> List[str]:
    members = [member["login"] for member in api.list_org_members(org)]
    LOG.info("Found %d members in organization %s", len(members), org)
    return members


def deduplicate(repositories: Iterable[RepositoryRef]) -> List[RepositoryRef]:
    """Drop repositories whose full name was already seen, keeping first occurrences in order."""
    seen = set()
    unique: List[RepositoryRef] = []
    for repo in repositories:
        if repo.full_name in seen:
            LOG.debug("Found duplicate repository %s", repo.full_name)
            continue
        seen.add(repo.full_name)
        unique.append(repo)
    return unique


def _unwrap_starred(entry: Mapping[str, Any]) -> Mapping[str, Any]:
    # The star+json media type wraps each repository with its starred_at time.
    if "full_name" not in entry and isinstance(entry.get("repo"), Mapping):
        return entry["repo"]
    return entry
