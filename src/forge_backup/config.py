from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import CroniterBadCronError, croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .duration import parse_duration
from .errors import DurationParseError

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_API_URL = "https://api.github.com"
ENV_PREFIX = "FORGE_BACKUP_"

RUN_TYPES = ("clone", "fetch", "dry-run")


class ConfigurationError(Exception):
    """Raised when the backup configuration is invalid."""


# --- Backup ------------------------------------------------------------------


class BackupConfig(BaseModel):
    """Immutable settings for a single backup run."""

    model_config = ConfigDict(frozen=True)

    usernames: List[str] = Field(default_factory=list, description="Users to back up; empty means the token owner.")
    in_org: List[str] = Field(default_factory=list, description="Organizations whose members are backed up.")
    backup_stars: bool = False
    token: Optional[str] = Field(default=None, description="Explicit token string (discouraged).")
    token_env: Optional[str] = Field(default=None, description="Environment variable containing token.")
    output: Path = Path("backup")
    # Validated by the executor so an unknown mode surfaces as a run error.
    run_type: str = "clone"
    ntfy_url: Optional[str] = None
    notification_failure: Literal["error", "warn"] = "error"
    recurse_submodules: bool = False
    max_workers: Optional[int] = Field(default=None, description="Clone worker cap; unset means one per repository.")
    api_url: str = DEFAULT_API_URL

    @field_validator("usernames", "in_org")
    @classmethod
    def _reject_blank_names(cls, value: List[str]) -> List[str]:
        cleaned = [name.strip() for name in value]
        if any(not name for name in cleaned):
            raise ValueError("Names must not be blank; leave the list empty to back up the authenticated user.")
        return cleaned

    @field_validator("output")
    @classmethod
    def _expand_output(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("max_workers")
    @classmethod
    def _positive_workers(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 1:
            raise ValueError("max_workers must be at least 1")
        return value

    def resolved_token(self) -> Optional[str]:
        if self.token:
            return self.token
        if self.token_env:
            return os.getenv(self.token_env)
        return None


# --- Scheduler ---------------------------------------------------------------


class SchedulerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    interval: Optional[str] = Field(default=None, description="Go-style duration such as 24h.")
    cron: Optional[str] = Field(default=None, description="Cron expression, alternative to interval.")
    timezone: str = "UTC"
    max_backups: int = 1

    @field_validator("interval")
    @classmethod
    def _validate_interval(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            parse_duration(value)
        except DurationParseError as exc:
            raise ValueError(str(exc)) from exc
        return value

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        try:
            croniter(value, datetime.utcnow())
        except (CroniterBadCronError, ValueError) as exc:  # pragma: no cover - library errors
            raise ValueError(f"Invalid cron expression '{value}': {exc}") from exc
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as exc:  # pragma: no cover - library errors
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value

    @model_validator(mode="after")
    def _single_trigger(self) -> "SchedulerConfig":
        if self.interval and self.cron:
            raise ValueError("Configure either interval or cron, not both.")
        return self

    @property
    def enabled(self) -> bool:
        return bool(self.interval or self.cron)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class CoreConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    backup: BackupConfig = Field(default_factory=BackupConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def with_overrides(
        self,
        backup: Optional[Mapping[str, Any]] = None,
        scheduler: Optional[Mapping[str, Any]] = None,
    ) -> "CoreConfig":
        """Return a re-validated copy with the given non-None values applied."""
        raw = self.model_dump()
        raw["backup"].update({k: v for k, v in (backup or {}).items() if v is not None})
        raw["scheduler"].update({k: v for k, v in (scheduler or {}).items() if v is not None})
        try:
            return CoreConfig.model_validate(raw)
        except ValidationError as exc:
            raise ConfigurationError(str(exc)) from exc


# --- Loading -----------------------------------------------------------------

_LIST_FIELDS = {"usernames", "in_org"}
_BACKUP_ENV_FIELDS = (
    "usernames",
    "in_org",
    "backup_stars",
    "token",
    "token_env",
    "output",
    "run_type",
    "ntfy_url",
    "notification_failure",
    "recurse_submodules",
    "max_workers",
    "api_url",
)
_SCHEDULER_ENV_FIELDS = ("interval", "cron", "timezone", "max_backups")


def _env_overrides(environ: Mapping[str, str], fields: tuple) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name in fields:
        value = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value is None:
            continue
        if name in _LIST_FIELDS:
            overrides[name] = [item.strip() for item in value.split(",") if item.strip()]
        else:
            overrides[name] = value
    return overrides


def load_config(
    path: Path,
    *,
    required: bool = False,
    environ: Optional[Mapping[str, str]] = None,
) -> CoreConfig:
    """Load the YAML config at ``path`` and apply ``FORGE_BACKUP_*`` overrides."""
    environ = os.environ if environ is None else environ

    raw: Dict[str, Any] = {}
    if path.exists():
        with path.open("r", encoding="utf-8") as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")
    elif required:
        raise ConfigurationError(f"Configuration file not found: {path}")

    backup = dict(raw.get("backup") or {})
    backup.update(_env_overrides(environ, _BACKUP_ENV_FIELDS))
    scheduler = dict(raw.get("scheduler") or {})
    scheduler.update(_env_overrides(environ, _SCHEDULER_ENV_FIELDS))
    logging_block = dict(raw.get("logging") or {})
    if f"{ENV_PREFIX}LOG_LEVEL" in environ:
        logging_block["level"] = environ[f"{ENV_PREFIX}LOG_LEVEL"]

    try:
        return CoreConfig.model_validate({"backup": backup, "scheduler": scheduler, "logging": logging_block})
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
