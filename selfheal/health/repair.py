"""Repair engine — applies reversible fixes for integrity issues in auditable sessions.

A session walks the current issue list strictly in order, one store mutation
per issue, and records a RepairResult for each. Before anything is changed the
pre-repair record is captured as a typed snapshot so the whole session can be
replayed backwards by rollback_session().

Per-issue failures are recorded and the session carries on (best effort).
Only a failure outside the per-issue handling, such as the issue scan itself,
fails the session and is raised as SessionFailure.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..config import settings
from ..store import GraphStore
from .monitor import HealthMonitor, IntegrityIssue, IssueRule, IssueType

logger = logging.getLogger(__name__)

NO_ACTION_NEEDED = "NO_ACTION_NEEDED"
REPORTED_ONLY = "REPORTED_ONLY"
SKIPPED = "SKIPPED"

PLACEHOLDER_TITLE = "[Auto-Repaired] {node_id}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Rollback snapshots ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class EdgeSnapshot:
    """Full functions_edges row captured before an orphan edge is deleted."""

    parent_id: str
    child_id: str
    weight: int | None
    relationship_type: str | None
    created_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "edge", **asdict(self)}


@dataclass(frozen=True)
class NodeTitleSnapshot:
    """Title and update stamp of a node before a placeholder title is written."""

    node_id: str
    title: str | None
    updated_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": "node_title", **asdict(self)}


RollbackData = EdgeSnapshot | NodeTitleSnapshot


# ── Results & sessions ───────────────────────────────────────────────────────


@dataclass
class RepairResult:
    issue: IntegrityIssue
    success: bool = False
    action: str = "PENDING"
    rollback_available: bool = False
    rollback_data: RollbackData | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "issue": self.issue.to_dict(),
            "success": self.success,
            "action": self.action,
            "rollback_available": self.rollback_available,
            "rollback_data": self.rollback_data.to_dict() if self.rollback_data else None,
            "error": self.error,
        }


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class RepairSession:
    id: str
    start_time: datetime = field(default_factory=_utcnow)
    dry_run: bool = False
    end_time: datetime | None = None
    results: list[RepairResult] = field(default_factory=list)
    status: SessionStatus = SessionStatus.RUNNING
    error: str | None = None
    rollback_failures: int = 0

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "dry_run": self.dry_run,
            "status": self.status.value,
            "error": self.error,
            "rollback_failures": self.rollback_failures,
            "results": [r.to_dict() for r in self.results],
        }


class SessionFailure(Exception):
    """A repair session aborted outside per-issue handling."""

    def __init__(self, session: RepairSession, message: str) -> None:
        super().__init__(message)
        self.session = session


# ── Engine ───────────────────────────────────────────────────────────────────


class RepairEngine:
    """Runs repair sessions and keeps a bounded table of recent sessions.

    Lifecycle:
        engine = RepairEngine(monitor)
        session = await engine.start_repair_session(dry_run=True)
        await engine.rollback_session(session.id)
    """

    def __init__(
        self,
        monitor: HealthMonitor,
        store: GraphStore | None = None,
        max_sessions_kept: int | None = None,
    ) -> None:
        self.monitor = monitor
        self.store = store or monitor.store
        self.max_sessions_kept = max_sessions_kept or settings.max_sessions_kept
        self._sessions: dict[str, RepairSession] = {}
        self._rollbacks_in_progress: set[str] = set()
        self._lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="repair")
        self._handlers: dict[IssueType, Callable[[IntegrityIssue, RepairResult, bool], None]] = {
            IssueType.ORPHAN_EDGE: self._repair_orphan_edge,
            IssueType.INVALID_DATA: self._repair_invalid_data,
            IssueType.DUPLICATE: self._repair_duplicate,
            IssueType.MISSING_REFERENCE: self._repair_missing_reference,
        }

    # -- public API ------------------------------------------------------------

    async def start_repair_session(self, dry_run: bool = False) -> RepairSession:
        """Scan for issues and repair them one by one."""
        session = RepairSession(id=str(uuid.uuid4()), dry_run=dry_run)
        async with self._lock:
            self._sessions[session.id] = session

        loop = asyncio.get_running_loop()
        try:
            issues = await self.monitor.find_integrity_issues()
            logger.info(
                "Starting repair session %s (%d issues, dry_run=%s)",
                session.id, len(issues), dry_run,
            )
            for issue in issues:
                result = await loop.run_in_executor(
                    self._executor, self._repair_issue, issue, dry_run,
                )
                session.results.append(result)
        except Exception as e:
            session.status = SessionStatus.FAILED
            session.end_time = _utcnow()
            session.error = f"{type(e).__name__}: {e}"
            logger.error(
                "Repair session %s failed after %d results: %s",
                session.id, len(session.results), session.error,
            )
            await self._cleanup_old_sessions()
            raise SessionFailure(session, f"Repair session {session.id} failed: {e}") from e

        session.status = SessionStatus.COMPLETED
        session.end_time = _utcnow()
        await self._cleanup_old_sessions()
        logger.info(
            "Repair session %s completed: %d/%d successful",
            session.id, session.success_count, len(session.results),
        )
        return session

    async def rollback_session(self, session_id: str) -> bool:
        """Undo a session's repairs in reverse order. False if nothing was rolled back."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                logger.error("Session %s not found for rollback", session_id)
                return False
            if session.status not in (SessionStatus.COMPLETED, SessionStatus.FAILED):
                logger.warning("Session %s is %s, cannot roll back", session_id, session.status.value)
                return False
            if session.dry_run:
                logger.warning("Session %s was a dry run, nothing to roll back", session_id)
                return False
            if session_id in self._rollbacks_in_progress:
                logger.warning("Rollback of session %s already in progress", session_id)
                return False
            pending = [
                r for r in reversed(session.results)
                if r.rollback_available and r.rollback_data is not None
            ]
            if not pending:
                logger.info("Session %s has no reversible results", session_id)
                return False
            self._rollbacks_in_progress.add(session_id)

        logger.info("Rolling back session %s (%d records)", session_id, len(pending))
        loop = asyncio.get_running_loop()
        restored = 0
        try:
            for result in pending:
                try:
                    await loop.run_in_executor(self._executor, self._rollback_result, result)
                    restored += 1
                except Exception:
                    session.rollback_failures += 1
                    logger.exception("Rollback failed for record %s", result.issue.record_id)
            session.status = SessionStatus.ROLLED_BACK
        finally:
            self._rollbacks_in_progress.discard(session_id)

        logger.info(
            "Session %s rolled back: %d restored, %d failed",
            session_id, restored, session.rollback_failures,
        )
        return True

    def get_sessions(self) -> list[RepairSession]:
        """All retained sessions, newest first."""
        return sorted(self._sessions.values(), key=lambda s: s.start_time, reverse=True)

    def get_session(self, session_id: str) -> RepairSession | None:
        return self._sessions.get(session_id)

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    # -- per-issue repair (runs on executor thread) -----------------------------

    def _repair_issue(self, issue: IntegrityIssue, dry_run: bool) -> RepairResult:
        result = RepairResult(issue=issue, action="DRY_RUN" if dry_run else "PENDING")
        handler = self._handlers.get(issue.type)
        if handler is None:
            result.action = SKIPPED
            result.error = f"Unknown issue type: {issue.type}"
            return result

        try:
            handler(issue, result, dry_run)
        except Exception as e:
            result.success = False
            result.error = f"{type(e).__name__}: {e}"
            logger.warning("Repair of %s %s failed: %s", issue.type.value, issue.record_id, result.error)
        return result

    def _repair_orphan_edge(self, issue: IntegrityIssue, result: RepairResult, dry_run: bool) -> None:
        parent_id, sep, child_id = issue.record_id.partition("->")
        if not (sep and parent_id and child_id):
            result.action = SKIPPED
            result.error = f"Malformed edge record id: {issue.record_id!r}"
            return

        edge = self.store.get(
            "SELECT parent_id, child_id, weight, relationship_type, created_at "
            "FROM functions_edges WHERE parent_id = ? AND child_id = ?",
            (parent_id, child_id),
        )
        if edge is None or (self._node_exists(parent_id) and self._node_exists(child_id)):
            result.action = NO_ACTION_NEEDED
            result.success = True
            return

        result.rollback_data = EdgeSnapshot(**edge)
        result.rollback_available = True

        if dry_run:
            result.action = f"DRY_RUN: Would delete orphan edge {parent_id} -> {child_id}"
            result.success = True
            return

        self.store.run(
            "DELETE FROM functions_edges WHERE parent_id = ? AND child_id = ?",
            (parent_id, child_id),
        )
        result.action = f"DELETED orphan edge {parent_id} -> {child_id}"
        result.success = True

    def _repair_invalid_data(self, issue: IntegrityIssue, result: RepairResult, dry_run: bool) -> None:
        node = self.store.get(
            "SELECT id, title, updated_at FROM functions_nodes WHERE id = ?",
            (issue.record_id,),
        )
        if node is None:
            result.action = NO_ACTION_NEEDED
            result.success = True
            return

        if not _is_missing_title(issue):
            result.action = SKIPPED
            result.error = f"No automatic repair for this invalid data ({issue.description}); manual review required"
            return

        if node["title"]:
            result.action = NO_ACTION_NEEDED
            result.success = True
            return

        result.rollback_data = NodeTitleSnapshot(
            node_id=node["id"], title=node["title"], updated_at=node["updated_at"],
        )
        result.rollback_available = True

        # TODO: mark placeholder titles with a needs_review flag once the node schema has one
        new_title = PLACEHOLDER_TITLE.format(node_id=issue.record_id)
        if dry_run:
            result.action = f'DRY_RUN: Would set title to "{new_title}"'
            result.success = True
            return

        self.store.run(
            "UPDATE functions_nodes SET title = ?, updated_at = ? WHERE id = ?",
            (new_title, _utcnow().isoformat(), issue.record_id),
        )
        result.action = f'UPDATED title to "{new_title}"'
        result.success = True

    def _repair_duplicate(self, issue: IntegrityIssue, result: RepairResult, dry_run: bool) -> None:
        result.action = REPORTED_ONLY
        result.success = True
        result.error = "Duplicate repair requires manual review - keeping all entries"

    def _repair_missing_reference(self, issue: IntegrityIssue, result: RepairResult, dry_run: bool) -> None:
        result.action = REPORTED_ONLY
        result.success = True
        result.error = "Missing reference repair requires manual review"

    def _node_exists(self, node_id: str) -> bool:
        return self.store.get("SELECT 1 AS found FROM functions_nodes WHERE id = ?", (node_id,)) is not None

    # -- rollback (runs on executor thread) ------------------------------------

    def _rollback_result(self, result: RepairResult) -> None:
        data = result.rollback_data
        if isinstance(data, EdgeSnapshot):
            self.store.run(
                "INSERT OR REPLACE INTO functions_edges "
                "(parent_id, child_id, weight, relationship_type, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (data.parent_id, data.child_id, data.weight, data.relationship_type, data.created_at),
            )
        elif isinstance(data, NodeTitleSnapshot):
            outcome = self.store.run(
                "UPDATE functions_nodes SET title = ?, updated_at = ? WHERE id = ?",
                (data.title, data.updated_at, data.node_id),
            )
            if outcome.changes == 0:
                raise LookupError(f"Node {data.node_id} no longer exists")
        else:
            raise TypeError(f"Unsupported rollback data: {type(data).__name__}")

    async def _cleanup_old_sessions(self) -> None:
        async with self._lock:
            # running sessions and sessions being rolled back are never evicted
            finished = [
                s for s in self._sessions.values()
                if s.status != SessionStatus.RUNNING and s.id not in self._rollbacks_in_progress
            ]
            excess = len(finished) - self.max_sessions_kept
            if excess <= 0:
                return
            oldest = sorted(finished, key=lambda s: s.start_time)[:excess]
            for session in oldest:
                del self._sessions[session.id]
            logger.debug("Evicted %d old repair sessions", len(oldest))


def _is_missing_title(issue: IntegrityIssue) -> bool:
    if issue.rule is not None:
        return issue.rule == IssueRule.MISSING_TITLE
    description = issue.description.lower()
    return "missing required title" in description or "without title" in description
