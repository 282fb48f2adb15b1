"""Health subsystem — monitor, repair engine, healing reports, scheduler."""

from .monitor import (
    HealthCheck,
    HealthCheckResult,
    HealthMonitor,
    HealthStatus,
    IntegrityIssue,
    IssueType,
    ScanFailure,
)
from .repair import RepairEngine, RepairResult, RepairSession, SessionFailure, SessionStatus
from .report import HealingReport, ReportSink
from .scheduler import ScheduleConfig, ScheduledTask, Scheduler, TaskStatus, TaskType
