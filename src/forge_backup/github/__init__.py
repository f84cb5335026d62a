from .api import GitHubAPI
from .clone import RepositoryCloneError, clone_repository
from .repositories import (
    FetchResult,
    RepositoryRef,
    Target,
    deduplicate,
    fetch_repositories,
    list_org_members,
)

__all__ = [
    "GitHubAPI",
    "FetchResult",
    "RepositoryRef",
    "Target",
    "deduplicate",
    "fetch_repositories",
    "list_org_members",
    "clone_repository",
    "RepositoryCloneError",
]
