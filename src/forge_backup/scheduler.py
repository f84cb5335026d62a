from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from croniter import croniter

from .config import BackupConfig
from .duration import parse_duration
from .orchestrator import BackupExecutor
from .retention import rolling_dir

LOG = logging.getLogger(__name__)


class Trigger(Protocol):
    def next_run(self, scheduled: datetime, now: datetime) -> datetime:
        ...


class IntervalTrigger:
    """Fixed-rate ticks; a run that overshoots its slot makes the next one start late."""

    def __init__(self, interval: timedelta) -> None:
        self.interval = interval

    def next_run(self, scheduled: datetime, now: datetime) -> datetime:
        return max(scheduled + self.interval, now)

    def __str__(self) -> str:
        return f"every {self.interval}"


class CronTrigger:
    def __init__(self, expression: str, timezone: str = "UTC") -> None:
        self.expression = expression
        self.timezone = ZoneInfo(timezone)

    def next_run(self, scheduled: datetime, now: datetime) -> datetime:
        return croniter(self.expression, now.astimezone(self.timezone)).get_next(datetime)

    def __str__(self) -> str:
        return f"cron '{self.expression}'"


class BackupScheduler:
    """Repeats backups on a trigger, rotating snapshot directories before each run."""

    def __init__(
        self,
        config: BackupConfig,
        trigger: Trigger,
        max_backups: int,
        executor: Optional[BackupExecutor] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self._config = config
        self._base_path = Path(config.output)
        self._trigger = trigger
        self._max_backups = max_backups
        self._executor = executor or BackupExecutor()
        self._stop = stop_event or threading.Event()
        self._error: Optional[BaseException] = None
        self.runs = 0

    def run(self) -> None:
        LOG.info("Starting backup %s into %s", self._trigger, self._base_path)
        started = _now()
        # The first run is synchronous; its failure aborts scheduling.
        self._tick()

        worker = threading.Thread(target=self._loop, args=(started,), name="backup-scheduler", daemon=True)
        worker.start()
        while worker.is_alive():
            worker.join(timeout=0.5)

        if self._error is not None:
            raise self._error
        LOG.info("Scheduler stopped")

    def stop(self) -> None:
        self._stop.set()

    def _loop(self, scheduled: datetime) -> None:
        while not self._stop.is_set():
            scheduled = self._trigger.next_run(scheduled, _now())
            LOG.info("Next backup scheduled for %s", scheduled.isoformat())
            delay = (scheduled - _now()).total_seconds()
            if delay > 0 and self._stop.wait(delay):
                return
            if self._stop.is_set():
                return
            try:
                self._tick()
            except Exception as exc:  # noqa: BLE001
                LOG.error("Scheduled backup failed: %s", exc)
                self._error = exc
                return

    def _tick(self) -> None:
        snapshot = rolling_dir(self._base_path, self._max_backups)
        run_config = self._config.model_copy(update={"output": snapshot})
        LOG.info("Starting backup into %s", snapshot)
        self._executor.run(run_config)
        self.runs += 1
        LOG.info("Backup into %s completed", snapshot)


def start_backup(
    config: BackupConfig,
    interval: Optional[str],
    max_backups: int,
    *,
    cron: Optional[str] = None,
    timezone: str = "UTC",
    executor: Optional[BackupExecutor] = None,
    stop_event: Optional[threading.Event] = None,
) -> None:
    """Run a single backup, or keep backing up on an interval or cron schedule.

    Returns when a one-shot run succeeds or the stop event is set; any run
    failure is raised.
    """
    executor = executor or BackupExecutor()

    if not interval and not cron:
        LOG.info("Starting backup")
        executor.run(config)
        return

    trigger: Trigger
    if interval:
        trigger = IntervalTrigger(parse_duration(interval))
    else:
        trigger = CronTrigger(cron, timezone)

    scheduler = BackupScheduler(
        config,
        trigger,
        max_backups,
        executor=executor,
        stop_event=stop_event,
    )
    scheduler.run()


def _now() -> datetime:
    return datetime.now().astimezone()
