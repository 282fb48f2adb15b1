"""Health monitor — bounded probes and a full integrity scan over the graph store.

The monitor only reads. Probes run concurrently on a thread pool, each under
its own timeout; a failing or hanging probe becomes a ``fail`` outcome in the
result instead of an exception. The integrity scan is all-or-nothing and
raises ScanFailure when the store cannot be read.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import defaultdict
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..config import settings
from ..store import GraphStore

logger = logging.getLogger(__name__)

# Node kinds the rest of the system knows how to render / annotate.
VALID_KINDS = (
    "category",
    "section",
    "record",
    "collection",
    "action",
    "note",
    "group",
    "workflow",
    "report",
    "dataset",
    "item",
)


# ── Models ───────────────────────────────────────────────────────────────────


class IssueType(str, Enum):
    ORPHAN_EDGE = "orphan_edge"
    INVALID_DATA = "invalid_data"
    DUPLICATE = "duplicate"
    MISSING_REFERENCE = "missing_reference"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueRule(str, Enum):
    """The specific rule that produced an issue."""

    ORPHAN_PARENT = "orphan_parent"
    ORPHAN_CHILD = "orphan_child"
    MISSING_TITLE = "missing_title"
    INVALID_KIND = "invalid_kind"
    MALFORMED_PATH = "malformed_path"
    DUPLICATE_TITLE_KIND = "duplicate_title_kind"
    MISSING_PATH_REFERENCE = "missing_path_reference"


@dataclass
class IntegrityIssue:
    """One detected inconsistency. Produced fresh per scan, never persisted."""

    type: IssueType
    record_id: str
    description: str
    severity: Severity
    table: str = "functions_nodes"
    rule: IssueRule | None = None
    suggested_fix: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "record_id": self.record_id,
            "description": self.description,
            "severity": self.severity.value,
            "table": self.table,
            "rule": self.rule.value if self.rule else None,
            "suggested_fix": self.suggested_fix,
        }


class CheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass
class HealthCheck:
    """Outcome of a single probe."""

    name: str
    status: CheckStatus
    message: str
    critical: bool = False
    details: dict[str, Any] | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "critical": self.critical,
            "details": self.details,
            "duration_ms": self.duration_ms,
        }


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheckResult:
    status: HealthStatus
    checks: list[HealthCheck] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    summary: str = ""

    def count(self, status: CheckStatus) -> int:
        return sum(1 for c in self.checks if c.status == status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "checks": [c.to_dict() for c in self.checks],
            "timestamp": self.timestamp.isoformat(),
            "summary": self.summary,
        }


class ScanFailure(Exception):
    """The integrity scan itself could not complete."""


ProbeOutcome = tuple[CheckStatus, str, dict[str, Any] | None]


def aggregate_status(checks: list[HealthCheck]) -> HealthStatus:
    """Healthy if all pass; unhealthy if a critical probe failed; else degraded."""
    if any(c.critical and c.status == CheckStatus.FAIL for c in checks):
        return HealthStatus.UNHEALTHY
    if any(c.status != CheckStatus.PASS for c in checks):
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


# ── Monitor ──────────────────────────────────────────────────────────────────


class HealthMonitor:
    """Runs health probes and integrity scans against a GraphStore."""

    def __init__(
        self,
        store: GraphStore,
        probe_timeout_ms: int | None = None,
        required_tables: list[str] | None = None,
        storage_log_warn_threshold: int | None = None,
    ) -> None:
        self.store = store
        self.probe_timeout_ms = probe_timeout_ms or settings.probe_timeout_ms
        self.required_tables = required_tables or list(settings.required_tables)
        self.storage_log_warn_threshold = (
            storage_log_warn_threshold or settings.storage_log_warn_threshold
        )
        self._executor = ThreadPoolExecutor(
            max_workers=len(self._probes()), thread_name_prefix="health-probe",
        )
        self._scan_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="integrity-scan")
        self._last_result: HealthCheckResult | None = None

    def _probes(self) -> list[tuple[str, Callable[[], ProbeOutcome], bool]]:
        # (name, probe, critical)
        return [
            ("connection", self._check_connection, True),
            ("schema_integrity", self._check_schema_integrity, True),
            ("referential_integrity", self._check_referential_integrity, False),
            ("duplicates", self._check_duplicates, False),
            ("data_validity", self._check_data_validity, False),
            ("storage_health", self._check_storage_health, False),
        ]

    async def run_health_checks(self) -> HealthCheckResult:
        """Run the full probe battery. Never raises."""
        t0 = time.perf_counter()
        try:
            checks = list(await asyncio.gather(
                *(self._run_probe(name, probe, critical) for name, probe, critical in self._probes())
            ))
        except Exception as e:
            logger.exception("Health check battery crashed")
            checks = [HealthCheck(
                name="global_check", status=CheckStatus.FAIL, critical=True,
                message=f"Health check failed: {type(e).__name__}: {e}",
            )]

        status = aggregate_status(checks)
        elapsed = (time.perf_counter() - t0) * 1000
        result = HealthCheckResult(status=status, checks=checks)
        result.summary = (
            f"{len(checks)} checks completed in {elapsed:.0f}ms - "
            f"{result.count(CheckStatus.FAIL)} failures, {result.count(CheckStatus.WARN)} warnings"
        )
        self._last_result = result

        log = logger.info if status == HealthStatus.HEALTHY else logger.warning
        log("Health checks: %s (%s)", status.value, result.summary)
        return result

    async def _run_probe(
        self, name: str, probe: Callable[[], ProbeOutcome], critical: bool,
    ) -> HealthCheck:
        """Run one probe on the executor, bounded by the probe timeout."""
        loop = asyncio.get_running_loop()
        t0 = time.perf_counter()
        try:
            status, message, details = await asyncio.wait_for(
                loop.run_in_executor(self._executor, probe),
                timeout=self.probe_timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            logger.warning("Probe %s timed out after %dms", name, self.probe_timeout_ms)
            return HealthCheck(
                name=name, status=CheckStatus.FAIL, critical=critical,
                message=f"Probe timed out after {self.probe_timeout_ms}ms",
                duration_ms=float(self.probe_timeout_ms),
            )
        except Exception as e:
            latency = (time.perf_counter() - t0) * 1000
            logger.warning("Probe %s failed: %s", name, e)
            return HealthCheck(
                name=name, status=CheckStatus.FAIL, critical=critical,
                message=f"{name} check failed: {type(e).__name__}: {e}",
                duration_ms=round(latency, 1),
            )

        latency = (time.perf_counter() - t0) * 1000
        return HealthCheck(
            name=name, status=status, message=message, critical=critical,
            details=details, duration_ms=round(latency, 1),
        )

    # ── Probes (run on executor threads) ─────────────────────────────────────

    def _check_connection(self) -> ProbeOutcome:
        row = self.store.get("SELECT 1 AS health_check")
        if row and row.get("health_check") == 1:
            return CheckStatus.PASS, "Database connection OK", None
        return CheckStatus.FAIL, "Connection check returned unexpected result", None

    def _check_schema_integrity(self) -> ProbeOutcome:
        rows = self.store.all("SELECT name FROM sqlite_master WHERE type = 'table'")
        names = {r["name"] for r in rows}
        missing = [t for t in self.required_tables if t not in names]
        if missing:
            return (
                CheckStatus.FAIL,
                f"Missing tables: {', '.join(missing)}",
                {"missing_tables": missing},
            )
        return CheckStatus.PASS, "All required tables exist", {"table_count": len(names)}

    def _check_referential_integrity(self) -> ProbeOutcome:
        row = self.store.get("""
            SELECT
                SUM(CASE WHEN NOT EXISTS (
                    SELECT 1 FROM functions_nodes n WHERE n.id = e.parent_id
                ) THEN 1 ELSE 0 END) AS orphan_parents,
                SUM(CASE WHEN NOT EXISTS (
                    SELECT 1 FROM functions_nodes n WHERE n.id = e.child_id
                ) THEN 1 ELSE 0 END) AS orphan_children
            FROM functions_edges e
        """) or {}
        parents = row.get("orphan_parents") or 0
        children = row.get("orphan_children") or 0
        details = {"orphan_parents": parents, "orphan_children": children}
        if parents + children > 0:
            return CheckStatus.WARN, f"Found {parents + children} orphan edge references", details
        return CheckStatus.PASS, "All references are valid", details

    def _check_duplicates(self) -> ProbeOutcome:
        groups = self.store.all("""
            SELECT title, kind, COUNT(*) AS cnt
            FROM functions_nodes
            WHERE title IS NOT NULL AND title != ''
            GROUP BY title, kind
            HAVING COUNT(*) > 1
        """)
        if groups:
            return (
                CheckStatus.WARN,
                f"Found {len(groups)} duplicate entries",
                {"duplicates": groups[:10]},
            )
        return CheckStatus.PASS, "No duplicate entries found", None

    def _check_data_validity(self) -> ProbeOutcome:
        problems: list[str] = []
        no_title = self.store.get(
            "SELECT COUNT(*) AS count FROM functions_nodes WHERE title IS NULL OR title = ''"
        ) or {}
        if no_title.get("count"):
            problems.append(f"{no_title['count']} nodes without title")

        placeholders = ",".join("?" for _ in VALID_KINDS)
        bad_kind = self.store.get(
            f"SELECT COUNT(*) AS count FROM functions_nodes WHERE kind NOT IN ({placeholders})",
            VALID_KINDS,
        ) or {}
        if bad_kind.get("count"):
            problems.append(f"{bad_kind['count']} nodes with invalid kind")

        if problems:
            return (
                CheckStatus.WARN,
                f"Data validity issues: {'; '.join(problems)}",
                {"issues": problems},
            )
        return CheckStatus.PASS, "All data is valid", None

    def _check_storage_health(self) -> ProbeOutcome:
        counts = self.store.get("""
            SELECT
                (SELECT COUNT(*) FROM functions_nodes) AS nodes,
                (SELECT COUNT(*) FROM functions_edges) AS edges,
                (SELECT COUNT(*) FROM audit_log) AS logs
        """) or {}
        details = {
            "nodes": counts.get("nodes", 0),
            "edges": counts.get("edges", 0),
            "logs": counts.get("logs", 0),
        }
        details["total_records"] = sum(details.values())
        if details["logs"] > self.storage_log_warn_threshold:
            return CheckStatus.WARN, "Large number of audit log entries - consider cleanup", details
        return CheckStatus.PASS, f"Database contains {details['total_records']} records", details

    # ── Integrity scan ───────────────────────────────────────────────────────

    async def find_integrity_issues(self) -> list[IntegrityIssue]:
        """Full scan of the graph. Raises ScanFailure if the store can't be read."""
        loop = asyncio.get_running_loop()
        try:
            issues = await loop.run_in_executor(self._scan_executor, self._scan)
        except Exception as e:
            logger.error("Integrity scan failed: %s", e)
            raise ScanFailure(f"Integrity scan failed: {type(e).__name__}: {e}") from e

        by_type: dict[str, int] = defaultdict(int)
        for issue in issues:
            by_type[issue.type.value] += 1
        logger.info("Integrity scan found %d issues %s", len(issues), dict(by_type))
        return issues

    def _scan(self) -> list[IntegrityIssue]:
        issues = self._scan_orphan_edges()
        nodes = self.store.all("SELECT id, title, kind, path_json FROM functions_nodes ORDER BY id")
        issues.extend(self._scan_nodes(nodes))
        issues.extend(self._scan_duplicates(nodes))
        return issues

    def _scan_orphan_edges(self) -> list[IntegrityIssue]:
        rows = self.store.all("""
            SELECT e.parent_id, e.child_id,
                   EXISTS (SELECT 1 FROM functions_nodes n WHERE n.id = e.parent_id) AS parent_exists,
                   EXISTS (SELECT 1 FROM functions_nodes n WHERE n.id = e.child_id) AS child_exists
            FROM functions_edges e
            WHERE NOT EXISTS (SELECT 1 FROM functions_nodes n WHERE n.id = e.parent_id)
               OR NOT EXISTS (SELECT 1 FROM functions_nodes n WHERE n.id = e.child_id)
        """)
        issues = []
        for edge in rows:
            missing = []
            if not edge["parent_exists"]:
                missing.append(f"parent node: {edge['parent_id']}")
            if not edge["child_exists"]:
                missing.append(f"child node: {edge['child_id']}")
            issues.append(IntegrityIssue(
                type=IssueType.ORPHAN_EDGE,
                record_id=f"{edge['parent_id']}->{edge['child_id']}",
                description=f"Edge references non-existent {' and '.join(missing)}",
                severity=Severity.HIGH,
                table="functions_edges",
                rule=IssueRule.ORPHAN_PARENT if not edge["parent_exists"] else IssueRule.ORPHAN_CHILD,
                suggested_fix="DELETE edge or restore the missing node",
            ))
        return issues

    def _scan_nodes(self, nodes: list[dict[str, Any]]) -> list[IntegrityIssue]:
        known_ids = {n["id"] for n in nodes}
        issues = []
        for node in nodes:
            node_id = node["id"]

            if not node["title"]:
                issues.append(IntegrityIssue(
                    type=IssueType.INVALID_DATA,
                    record_id=node_id,
                    description="Node is missing required title field",
                    severity=Severity.MEDIUM,
                    rule=IssueRule.MISSING_TITLE,
                    suggested_fix="Set a title or remove the node",
                ))

            if node["kind"] not in VALID_KINDS:
                issues.append(IntegrityIssue(
                    type=IssueType.INVALID_DATA,
                    record_id=node_id,
                    description=f"Node has invalid kind '{node['kind']}'",
                    severity=Severity.LOW,
                    rule=IssueRule.INVALID_KIND,
                    suggested_fix=f"Change kind to one of: {', '.join(VALID_KINDS)}",
                ))

            try:
                path = json.loads(node["path_json"] or "[]")
            except (TypeError, ValueError):
                path = None
            if not isinstance(path, list):
                issues.append(IntegrityIssue(
                    type=IssueType.INVALID_DATA,
                    record_id=node_id,
                    description="Node has malformed path_json (expected a JSON list of node ids)",
                    severity=Severity.MEDIUM,
                    rule=IssueRule.MALFORMED_PATH,
                    suggested_fix="Rebuild the node path from its parent edges",
                ))
                continue

            unresolved = [str(ref) for ref in path if str(ref) not in known_ids]
            if unresolved:
                issues.append(IntegrityIssue(
                    type=IssueType.MISSING_REFERENCE,
                    record_id=node_id,
                    description=f"Node path references non-existent node(s): {', '.join(unresolved)}",
                    severity=Severity.MEDIUM,
                    rule=IssueRule.MISSING_PATH_REFERENCE,
                    suggested_fix="Restore the referenced node or re-parent this node",
                ))
        return issues

    def _scan_duplicates(self, nodes: list[dict[str, Any]]) -> list[IntegrityIssue]:
        groups: dict[tuple[str, str], list[str]] = defaultdict(list)
        for node in nodes:
            if node["title"]:
                groups[(node["title"], node["kind"])].append(node["id"])

        issues = []
        for (title, kind), ids in groups.items():
            if len(ids) < 2:
                continue
            ids = sorted(ids)
            issues.append(IntegrityIssue(
                type=IssueType.DUPLICATE,
                record_id=ids[0],
                description=(
                    f"Duplicate {kind} '{title}': also stored as {', '.join(ids[1:])}"
                ),
                severity=Severity.LOW,
                rule=IssueRule.DUPLICATE_TITLE_KIND,
                suggested_fix="Merge the duplicates or give them distinct titles",
            ))
        return issues

    # ── Introspection / lifecycle ────────────────────────────────────────────

    def get_last_check_result(self) -> HealthCheckResult | None:
        return self._last_result

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self._scan_executor.shutdown(wait=False)
