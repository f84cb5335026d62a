from __future__ import annotations

from typing import Dict, Optional


class BackupError(Exception):
    """Base class for failures surfaced by a backup run."""


class FetchError(BackupError):
    """Raised when a listing request against the forge API fails."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InvalidRunTypeError(BackupError):
    """Raised for a run type other than clone, fetch or dry-run."""


class BackupIOError(BackupError):
    """Raised when a snapshot directory or output file cannot be written or removed."""


class CloneError(BackupError):
    """Raised once all clone tasks finished and at least one of them failed."""

    def __init__(self, failures: Dict[str, str]) -> None:
        self.failures = dict(failures)
        names = ", ".join(sorted(self.failures))
        super().__init__(f"Failed to clone {len(self.failures)} repositories: {names}")


class DurationParseError(BackupError):
    """Raised for a malformed or non-positive interval string."""


class NotificationError(BackupError):
    """Raised when the completion notification could not be delivered."""
