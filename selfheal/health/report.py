"""Healing reports — audit trail of every scheduled health run and repair.

Reports are kept in memory (bounded) and persisted to the store's audit_log
table. create_report() never raises: a report that cannot be saved is logged
and the scheduled run carries on.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from ..config import settings
from ..store import GraphStore
from .monitor import CheckStatus, HealthCheckResult, HealthStatus, IntegrityIssue
from .repair import RepairSession

logger = logging.getLogger(__name__)

AUDIT_ENTITY = "selfhealing_report"

_KIND_LABELS = {
    "nightly": "Nightly check",
    "weekly": "Weekly deep analysis",
    "manual": "Manual check",
    "repair": "Repair session",
}


class ReportStatus(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


_STATUS_BY_HEALTH = {
    HealthStatus.HEALTHY: ReportStatus.SUCCESS,
    HealthStatus.DEGRADED: ReportStatus.WARNING,
    HealthStatus.UNHEALTHY: ReportStatus.ERROR,
}


@dataclass
class HealingReportEntry:
    id: str
    type: str  # nightly | weekly | manual | repair
    status: ReportStatus
    summary: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    health_result: HealthCheckResult | None = None
    issues: list[IntegrityIssue] | None = None
    repair_session: RepairSession | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status.value,
            "summary": self.summary,
            "timestamp": self.timestamp.isoformat(),
            "health_result": self.health_result.to_dict() if self.health_result else None,
            "issues": [i.to_dict() for i in self.issues] if self.issues is not None else None,
            "repair_session": self.repair_session.to_dict() if self.repair_session else None,
            "details": self.details,
        }


class ReportSink(Protocol):
    """Where the scheduler sends the outcome of each run. Must not raise."""

    async def create_report(
        self,
        kind: str,
        health_result: HealthCheckResult,
        issues: list[IntegrityIssue] | None = None,
        repair_session: RepairSession | None = None,
    ) -> HealingReportEntry | None: ...


class HealingReport:
    """Default ReportSink: in-memory history plus audit_log persistence."""

    def __init__(self, store: GraphStore, max_reports_kept: int | None = None) -> None:
        self.store = store
        self.max_reports_kept = max_reports_kept or settings.max_reports_kept
        self._reports: dict[str, HealingReportEntry] = {}

    async def create_report(
        self,
        kind: str,
        health_result: HealthCheckResult,
        issues: list[IntegrityIssue] | None = None,
        repair_session: RepairSession | None = None,
    ) -> HealingReportEntry | None:
        try:
            report = HealingReportEntry(
                id=str(uuid.uuid4()),
                type=kind,
                status=_STATUS_BY_HEALTH[health_result.status],
                summary=generate_summary(kind, health_result, issues, repair_session),
                health_result=health_result,
                issues=issues,
                repair_session=repair_session,
                details={
                    "checks_performed": len(health_result.checks),
                    "checks_passed": health_result.count(CheckStatus.PASS),
                    "checks_warned": health_result.count(CheckStatus.WARN),
                    "checks_failed": health_result.count(CheckStatus.FAIL),
                    "issues_found": len(issues) if issues else 0,
                    "repairs_attempted": len(repair_session.results) if repair_session else 0,
                    "repairs_successful": repair_session.success_count if repair_session else 0,
                },
            )
        except Exception:
            logger.exception("Failed to build %s report", kind)
            return None

        self._reports[report.id] = report
        self._cleanup_old_reports()

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._save_to_database, report)
        except Exception as e:
            logger.error("Failed to save report %s to database: %s", report.id, e)

        logger.info("Created %s report %s: %s", kind, report.id, report.status.value)
        return report

    def _save_to_database(self, report: HealingReportEntry) -> None:
        self.store.run(
            "INSERT INTO audit_log (entity, entity_id, action, details, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (
                AUDIT_ENTITY,
                report.id,
                report.type,
                json.dumps({
                    "status": report.status.value,
                    "summary": report.summary,
                    "details": report.details,
                }),
                report.timestamp.isoformat(),
            ),
        )

    def _cleanup_old_reports(self) -> None:
        excess = len(self._reports) - self.max_reports_kept
        if excess <= 0:
            return
        for report in sorted(self._reports.values(), key=lambda r: r.timestamp)[:excess]:
            del self._reports[report.id]

    # ── Queries ──────────────────────────────────────────────────────────────

    def get_reports(self, limit: int = 100) -> list[HealingReportEntry]:
        """Most recent reports first."""
        reports = sorted(self._reports.values(), key=lambda r: r.timestamp, reverse=True)
        return reports[:limit]

    def get_report(self, report_id: str) -> HealingReportEntry | None:
        return self._reports.get(report_id)

    def load_reports_from_database(self, limit: int = 100) -> list[HealingReportEntry]:
        """Read persisted report headers back from audit_log. Empty list on error."""
        try:
            rows = self.store.all(
                "SELECT entity_id, action, details, created_at FROM audit_log "
                "WHERE entity = ? ORDER BY created_at DESC LIMIT ?",
                (AUDIT_ENTITY, limit),
            )
        except Exception as e:
            logger.error("Failed to load reports from database: %s", e)
            return []

        reports = []
        for row in rows:
            try:
                payload = json.loads(row["details"] or "{}")
                reports.append(HealingReportEntry(
                    id=row["entity_id"],
                    type=row["action"],
                    status=ReportStatus(payload.get("status", ReportStatus.ERROR.value)),
                    summary=payload.get("summary", ""),
                    timestamp=datetime.fromisoformat(row["created_at"]),
                    details=payload.get("details") or {},
                ))
            except (ValueError, TypeError) as e:
                logger.warning("Skipping unreadable report row %s: %s", row.get("entity_id"), e)
        return reports

    def get_statistics(self) -> dict[str, Any]:
        reports = self.get_reports(limit=len(self._reports))
        by_type: dict[str, int] = {}
        by_status: dict[str, int] = {}
        for r in reports:
            by_type[r.type] = by_type.get(r.type, 0) + 1
            by_status[r.status.value] = by_status.get(r.status.value, 0) + 1

        success_rate = (
            by_status.get(ReportStatus.SUCCESS.value, 0) / len(reports) * 100
            if reports else 100.0
        )
        return {
            "total_reports": len(reports),
            "success_rate": round(success_rate, 2),
            "by_type": by_type,
            "by_status": by_status,
            "last_report": reports[0] if reports else None,
        }


def generate_summary(
    kind: str,
    health_result: HealthCheckResult,
    issues: list[IntegrityIssue] | None = None,
    repair_session: RepairSession | None = None,
) -> str:
    """One-line human summary, e.g. 'Nightly check | Status: degraded | ...'."""
    parts = [
        _KIND_LABELS.get(kind, kind),
        f"Status: {health_result.status.value}",
        (
            f"Checks: {health_result.count(CheckStatus.PASS)} OK, "
            f"{health_result.count(CheckStatus.WARN)} warnings, "
            f"{health_result.count(CheckStatus.FAIL)} failures"
        ),
    ]
    if issues:
        parts.append(f"{len(issues)} integrity issues found")
    if repair_session is not None:
        parts.append(f"{repair_session.success_count}/{len(repair_session.results)} repairs successful")
    return " | ".join(parts)
