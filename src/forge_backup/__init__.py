"""Forge repository backup package."""

from __future__ import annotations

from .config import BackupConfig, CoreConfig, load_config  # noqa: F401
from .orchestrator import BackupExecutor, run_backup  # noqa: F401
from .scheduler import start_backup  # noqa: F401

__version__ = "0.1.0"
