"""Self-healing scheduler — nightly checks, weekly deep analysis, escalation to repair.

One coarse asyncio timer (hourly by default) fires ticks. Each tick runs as
its own task so stop() never interrupts work in flight, and a tick that
arrives while the previous one is still running is skipped, not queued.

Escalation policy:
- nightly: health check; repair only if the store is degraded/unhealthy.
- weekly:  health check plus a full issue census; repair whenever issues exist.
- manual:  health check only.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from ..config import Settings, settings
from .monitor import HealthCheckResult, HealthMonitor, HealthStatus
from .repair import RepairEngine, RepairSession
from .report import ReportSink

logger = logging.getLogger(__name__)


# ── Models ───────────────────────────────────────────────────────────────────


class ScheduleConfig(BaseModel):
    """Cadence and escalation switches. Days count from 0 = Sunday."""

    model_config = {"extra": "forbid"}

    nightly_check_enabled: bool = True
    nightly_check_hour: int = Field(default=3, ge=0, le=23)
    weekly_deep_analysis_enabled: bool = True
    weekly_deep_analysis_day: int = Field(default=0, ge=0, le=6)
    auto_repair_enabled: bool = True
    auto_repair_dry_run_only: bool = False
    reporting_enabled: bool = True

    @classmethod
    def from_settings(cls, s: Settings) -> "ScheduleConfig":
        return cls(**{name: getattr(s, name) for name in cls.model_fields})


class TaskType(str, Enum):
    NIGHTLY = "nightly"
    WEEKLY = "weekly"
    MANUAL = "manual"


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # reserved for conditional suppression


@dataclass
class ScheduledTask:
    id: str
    name: str
    type: TaskType
    scheduled_time: datetime
    status: TaskStatus = TaskStatus.PENDING
    executed_time: datetime | None = None
    result: HealthCheckResult | RepairSession | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type.value,
            "scheduled_time": self.scheduled_time.isoformat(),
            "executed_time": self.executed_time.isoformat() if self.executed_time else None,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }


def load_schedule_config(path: Path | str, base: ScheduleConfig | None = None) -> ScheduleConfig:
    """Overlay the keys of a YAML file onto ``base`` (or the settings defaults)."""
    base = base or ScheduleConfig.from_settings(settings)
    try:
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    except Exception as e:
        raise RuntimeError(f"Could not read schedule file: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError(f"Schedule file {path} must contain a mapping, got {type(raw).__name__}")
    return ScheduleConfig.model_validate({**base.model_dump(), **raw})


def weekday_from_sunday(dt: datetime) -> int:
    """0 = Sunday … 6 = Saturday (Python's weekday() starts on Monday)."""
    return (dt.weekday() + 1) % 7


def _same_window(a: datetime, b: datetime) -> bool:
    return a.date() == b.date() and a.hour == b.hour


# ── Scheduler ────────────────────────────────────────────────────────────────


class Scheduler:
    """Runs the health monitor on a cadence and escalates to the repair engine.

    Lifecycle:
        scheduler = Scheduler(monitor, engine, report)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        monitor: HealthMonitor,
        engine: RepairEngine,
        report: ReportSink | None = None,
        config: ScheduleConfig | None = None,
        tick_interval: float | None = None,
        max_tasks_kept: int | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.monitor = monitor
        self.engine = engine
        self.report = report
        self.tick_interval = tick_interval or settings.tick_interval_seconds
        self.max_tasks_kept = max_tasks_kept or settings.max_tasks_kept
        self._config = config or ScheduleConfig.from_settings(settings)
        self._clock = clock  # local time; schedule hours are local
        self._tasks: dict[str, ScheduledTask] = {}
        self._last_fired: dict[TaskType, datetime] = {}
        self._timer: asyncio.Task[None] | None = None
        self._ticks: set[asyncio.Task[list[ScheduledTask]]] = set()
        self._running = False
        self._tick_in_progress = False

    # -- lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Start the hourly timer; the first tick fires immediately."""
        if self._running:
            logger.warning("Scheduler already running")
            return
        self._running = True
        self._timer = asyncio.create_task(self._timer_loop(), name="selfheal-scheduler")
        logger.info(
            "Self-healing scheduler started (interval=%ss, nightly=%02d:00, weekly day=%d)",
            self.tick_interval, self._config.nightly_check_hour, self._config.weekly_deep_analysis_day,
        )

    async def stop(self) -> None:
        """Cancel future ticks. A tick already running is left to finish."""
        if not self._running and self._timer is None:
            return
        self._running = False
        if self._timer:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        logger.info("Self-healing scheduler stopped")

    async def join(self) -> None:
        """Wait for ticks that are still in flight."""
        if self._ticks:
            await asyncio.gather(*self._ticks, return_exceptions=True)

    async def _timer_loop(self) -> None:
        while self._running:
            tick = asyncio.create_task(self._safe_tick(), name="selfheal-tick")
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)
            await asyncio.sleep(self.tick_interval)

    async def _safe_tick(self) -> list[ScheduledTask]:
        try:
            return await self.check_scheduled_tasks()
        except Exception:
            logger.exception("Scheduler tick crashed")
            return []

    # -- tick body -------------------------------------------------------------

    async def check_scheduled_tasks(self, now: datetime | None = None) -> list[ScheduledTask]:
        """Fire whichever scheduled tasks are due at ``now``. Skips if a tick is running."""
        if self._tick_in_progress:
            logger.warning("Previous tick still running, skipping this one")
            return []

        self._tick_in_progress = True
        try:
            now = now or self._clock()
            nightly_due = self._is_due(TaskType.NIGHTLY, now)
            weekly_due = self._is_due(TaskType.WEEKLY, now)

            tasks = []
            if nightly_due:
                self._last_fired[TaskType.NIGHTLY] = now
                tasks.append(await self.run_nightly_check())
            if weekly_due:
                self._last_fired[TaskType.WEEKLY] = now
                tasks.append(await self.run_weekly_deep_analysis())
            if not tasks:
                logger.debug("Tick at %s: nothing due", now.isoformat(timespec="minutes"))
            return tasks
        finally:
            self._tick_in_progress = False

    def _is_due(self, task_type: TaskType, now: datetime) -> bool:
        cfg = self._config
        if now.hour != cfg.nightly_check_hour:
            return False
        if task_type == TaskType.NIGHTLY and not cfg.nightly_check_enabled:
            return False
        if task_type == TaskType.WEEKLY and (
            not cfg.weekly_deep_analysis_enabled
            or weekday_from_sunday(now) != cfg.weekly_deep_analysis_day
        ):
            return False
        last = self._last_fired.get(task_type)
        return last is None or not _same_window(last, now)

    def next_run_times(self, now: datetime | None = None) -> dict[str, datetime]:
        """Start of the next window in which each enabled task type will fire."""
        now = now or self._clock()
        cfg = self._config
        first = now.replace(hour=cfg.nightly_check_hour, minute=0, second=0, microsecond=0)
        enabled = {
            TaskType.NIGHTLY: cfg.nightly_check_enabled,
            TaskType.WEEKLY: cfg.weekly_deep_analysis_enabled,
        }

        runs: dict[str, datetime] = {}
        for task_type, on in enabled.items():
            if not on:
                continue
            last = self._last_fired.get(task_type)
            for days in range(8):
                candidate = first + timedelta(days=days)
                if candidate + timedelta(hours=1) <= now:
                    continue
                if task_type == TaskType.WEEKLY and weekday_from_sunday(candidate) != cfg.weekly_deep_analysis_day:
                    continue
                if last is not None and _same_window(last, candidate):
                    continue
                runs[task_type.value] = candidate
                break
        return runs

    # -- task runners ------------------------------------------------------------

    async def run_nightly_check(self) -> ScheduledTask:
        """Health check; escalate to a repair session when the store is not healthy."""
        config = self._config
        task = self._new_task(TaskType.NIGHTLY, "Nightly health check")
        logger.info("Running nightly check (%s)", task.id)

        try:
            health = await self.monitor.run_health_checks()
            task.result = health

            session = None
            if config.auto_repair_enabled and health.status != HealthStatus.HEALTHY:
                logger.info(
                    "Store is %s, starting auto-repair (dry_run=%s)",
                    health.status.value, config.auto_repair_dry_run_only,
                )
                session = await self.engine.start_repair_session(config.auto_repair_dry_run_only)
                task.result = session

            if config.reporting_enabled and self.report is not None:
                await self.report.create_report("nightly", health, repair_session=session)

            self._finish(task)
        except Exception as e:
            self._fail(task, e)
        return task

    async def run_weekly_deep_analysis(self) -> ScheduledTask:
        """Health check plus full issue census; repair whenever issues exist."""
        config = self._config
        task = self._new_task(TaskType.WEEKLY, "Weekly deep analysis")
        logger.info("Running weekly deep analysis (%s)", task.id)

        try:
            health = await self.monitor.run_health_checks()
            issues = await self.monitor.find_integrity_issues()

            session = None
            if config.auto_repair_enabled and issues:
                logger.info(
                    "Found %d issues, starting repair (dry_run=%s)",
                    len(issues), config.auto_repair_dry_run_only,
                )
                session = await self.engine.start_repair_session(config.auto_repair_dry_run_only)

            if config.reporting_enabled and self.report is not None:
                await self.report.create_report(
                    "weekly", health, issues=issues, repair_session=session,
                )

            task.result = session or health
            self._finish(task)
        except Exception as e:
            self._fail(task, e)
        return task

    async def run_manual_check(self) -> ScheduledTask:
        """Operator-triggered diagnostics: health check only, never repairs."""
        task = self._new_task(TaskType.MANUAL, "Manual health check")
        logger.info("Running manual check (%s)", task.id)
        try:
            task.result = await self.monitor.run_health_checks()
            self._finish(task)
        except Exception as e:
            self._fail(task, e)
        return task

    def _new_task(self, task_type: TaskType, name: str) -> ScheduledTask:
        task = ScheduledTask(
            id=f"{task_type.value}-{uuid.uuid4().hex[:12]}",
            name=name,
            type=task_type,
            scheduled_time=self._clock(),
        )
        self._tasks[task.id] = task
        while len(self._tasks) > self.max_tasks_kept:
            self._tasks.pop(next(iter(self._tasks)))
        task.status = TaskStatus.RUNNING
        return task

    def _finish(self, task: ScheduledTask) -> None:
        task.status = TaskStatus.COMPLETED
        task.executed_time = self._clock()

    def _fail(self, task: ScheduledTask, exc: Exception) -> None:
        task.status = TaskStatus.FAILED
        task.error = f"{type(exc).__name__}: {exc}"
        task.executed_time = self._clock()
        logger.error("%s failed (%s): %s", task.name, task.id, task.error)

    # -- config & introspection -------------------------------------------------

    def update_config(self, partial: dict[str, Any]) -> ScheduleConfig:
        """Merge ``partial`` into the config. Invalid values leave it unchanged."""
        self._config = ScheduleConfig.model_validate({**self._config.model_dump(), **partial})
        logger.info("Schedule configuration updated: %s", self._config.model_dump())
        return self.get_config()

    def get_config(self) -> ScheduleConfig:
        return self._config.model_copy()

    def get_scheduled_tasks(self, limit: int = 100) -> list[ScheduledTask]:
        """Task history, newest first."""
        newest_first = list(reversed(self._tasks.values()))
        return sorted(newest_first, key=lambda t: t.scheduled_time, reverse=True)[:limit]

    def get_task(self, task_id: str) -> ScheduledTask | None:
        return self._tasks.get(task_id)

    def get_status(self) -> dict[str, Any]:
        tasks = self.get_scheduled_tasks()
        return {
            "is_running": self._running,
            "tick_in_progress": self._tick_in_progress,
            "config": self.get_config(),
            "task_count": len(self._tasks),
            "last_task": tasks[0] if tasks else None,
            "next_runs": self.next_run_times(),
        }
