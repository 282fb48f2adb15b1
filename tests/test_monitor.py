"""Tests for the health monitor: probes, aggregation and the integrity scan."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import MagicMock, patch

import pytest

from selfheal.health.monitor import (
    CheckStatus,
    HealthCheck,
    HealthMonitor,
    HealthStatus,
    IssueRule,
    IssueType,
    ScanFailure,
    Severity,
    aggregate_status,
)


def _checks(result) -> dict[str, HealthCheck]:
    return {c.name: c for c in result.checks}


def _broken_store() -> MagicMock:
    store = MagicMock()
    store.get.side_effect = RuntimeError("database is locked")
    store.all.side_effect = RuntimeError("database is locked")
    return store


# ── Aggregation ──────────────────────────────────────────────────────────────


class TestAggregateStatus:
    def test_all_pass_is_healthy(self) -> None:
        checks = [HealthCheck("a", CheckStatus.PASS, ""), HealthCheck("b", CheckStatus.PASS, "", critical=True)]
        assert aggregate_status(checks) == HealthStatus.HEALTHY

    def test_warning_is_degraded(self) -> None:
        checks = [HealthCheck("a", CheckStatus.PASS, "", critical=True), HealthCheck("b", CheckStatus.WARN, "")]
        assert aggregate_status(checks) == HealthStatus.DEGRADED

    def test_non_critical_failure_is_degraded(self) -> None:
        checks = [HealthCheck("a", CheckStatus.PASS, "", critical=True), HealthCheck("b", CheckStatus.FAIL, "")]
        assert aggregate_status(checks) == HealthStatus.DEGRADED

    def test_critical_failure_is_unhealthy(self) -> None:
        checks = [HealthCheck("a", CheckStatus.FAIL, "", critical=True), HealthCheck("b", CheckStatus.WARN, "")]
        assert aggregate_status(checks) == HealthStatus.UNHEALTHY

    def test_critical_warning_is_only_degraded(self) -> None:
        checks = [HealthCheck("a", CheckStatus.WARN, "", critical=True)]
        assert aggregate_status(checks) == HealthStatus.DEGRADED


# ── Probes ───────────────────────────────────────────────────────────────────


class TestRunHealthChecks:
    def test_healthy_graph(self, healthy_graph, monitor) -> None:
        result = asyncio.run(monitor.run_health_checks())

        assert result.status == HealthStatus.HEALTHY
        checks = _checks(result)
        assert list(checks) == [
            "connection", "schema_integrity", "referential_integrity",
            "duplicates", "data_validity", "storage_health",
        ]
        assert all(c.status == CheckStatus.PASS for c in result.checks)
        assert checks["connection"].critical and checks["schema_integrity"].critical
        assert not checks["duplicates"].critical
        assert checks["storage_health"].details["nodes"] == 3
        assert checks["storage_health"].details["edges"] == 2
        assert result.summary.startswith("6 checks completed in ")
        assert result.summary.endswith("0 failures, 0 warnings")

    def test_empty_store_is_healthy(self, monitor) -> None:
        result = asyncio.run(monitor.run_health_checks())
        assert result.status == HealthStatus.HEALTHY

    def test_broken_graph_is_degraded(self, broken_graph, monitor) -> None:
        result = asyncio.run(monitor.run_health_checks())

        assert result.status == HealthStatus.DEGRADED
        checks = _checks(result)
        assert checks["referential_integrity"].status == CheckStatus.WARN
        assert checks["referential_integrity"].details == {"orphan_parents": 1, "orphan_children": 1}
        assert checks["duplicates"].status == CheckStatus.WARN
        assert checks["data_validity"].status == CheckStatus.WARN
        assert "1 nodes without title" in checks["data_validity"].message
        assert "1 nodes with invalid kind" in checks["data_validity"].message
        assert checks["connection"].status == CheckStatus.PASS

    def test_missing_table_is_unhealthy(self, store, monitor) -> None:
        store.run("DROP TABLE audit_log")
        result = asyncio.run(monitor.run_health_checks())

        assert result.status == HealthStatus.UNHEALTHY
        schema = _checks(result)["schema_integrity"]
        assert schema.status == CheckStatus.FAIL
        assert schema.details == {"missing_tables": ["audit_log"]}
        assert _checks(result)["storage_health"].status == CheckStatus.FAIL

    def test_storage_warns_over_threshold(self, store) -> None:
        for i in range(3):
            store.run(
                "INSERT INTO audit_log (entity, action, created_at) VALUES (?, ?, ?)",
                ("test", "noop", f"2026-01-0{i + 1}"),
            )
        m = HealthMonitor(store, storage_log_warn_threshold=2)
        try:
            result = asyncio.run(m.run_health_checks())
        finally:
            m.close()
        assert _checks(result)["storage_health"].status == CheckStatus.WARN
        assert result.status == HealthStatus.DEGRADED

    def test_hanging_probe_times_out(self, store) -> None:
        m = HealthMonitor(store, probe_timeout_ms=50)

        def slow_connection():
            time.sleep(0.5)
            return CheckStatus.PASS, "late", None

        m._check_connection = slow_connection
        try:
            started = time.perf_counter()
            result = asyncio.run(m.run_health_checks())
            elapsed = time.perf_counter() - started
        finally:
            m.close()

        conn = _checks(result)["connection"]
        assert conn.status == CheckStatus.FAIL
        assert conn.message == "Probe timed out after 50ms"
        assert result.status == HealthStatus.UNHEALTHY
        assert elapsed < 0.5

    def test_every_probe_gets_its_own_budget(self, healthy_graph, store) -> None:
        m = HealthMonitor(store, probe_timeout_ms=400)

        for name, probe, _ in m._probes():
            def slow(probe=probe):
                time.sleep(0.25)
                return probe()

            setattr(m, f"_check_{name}", slow)
        try:
            result = asyncio.run(m.run_health_checks())
        finally:
            m.close()

        assert result.status == HealthStatus.HEALTHY
        assert all(c.status == CheckStatus.PASS for c in result.checks)

    def test_scan_not_blocked_by_hung_probes(self, healthy_graph, store) -> None:
        m = HealthMonitor(store, probe_timeout_ms=50)

        def hang():
            time.sleep(1.0)
            return CheckStatus.PASS, "late", None

        for name, _, _ in m._probes():
            setattr(m, f"_check_{name}", hang)

        async def scenario():
            health = await m.run_health_checks()
            started = time.perf_counter()
            issues = await m.find_integrity_issues()
            return health, issues, time.perf_counter() - started

        try:
            health, issues, scan_seconds = asyncio.run(scenario())
        finally:
            m.close()

        assert health.status == HealthStatus.UNHEALTHY
        assert issues == []
        assert scan_seconds < 0.5

    def test_non_critical_probe_error_is_degraded(self, healthy_graph, monitor) -> None:
        def boom():
            raise RuntimeError("no such column: kind")

        monitor._check_duplicates = boom
        result = asyncio.run(monitor.run_health_checks())

        dup = _checks(result)["duplicates"]
        assert dup.status == CheckStatus.FAIL
        assert "RuntimeError" in dup.message
        assert result.status == HealthStatus.DEGRADED
        assert len(result.checks) == 6

    def test_unreachable_store_never_raises(self) -> None:
        m = HealthMonitor(_broken_store())
        try:
            result = asyncio.run(m.run_health_checks())
        finally:
            m.close()
        assert result.status == HealthStatus.UNHEALTHY
        assert all(c.status == CheckStatus.FAIL for c in result.checks)
        assert result.summary.endswith("6 failures, 0 warnings")

    def test_battery_crash_becomes_global_check(self, monitor) -> None:
        with patch.object(monitor, "_probes", side_effect=RuntimeError("boom")):
            result = asyncio.run(monitor.run_health_checks())
        assert result.status == HealthStatus.UNHEALTHY
        assert [c.name for c in result.checks] == ["global_check"]
        assert result.checks[0].critical

    def test_last_result_is_kept(self, monitor) -> None:
        assert monitor.get_last_check_result() is None
        result = asyncio.run(monitor.run_health_checks())
        assert monitor.get_last_check_result() is result

    def test_to_dict(self, monitor) -> None:
        data = asyncio.run(monitor.run_health_checks()).to_dict()
        assert data["status"] == "healthy"
        assert data["checks"][0]["name"] == "connection"
        assert data["checks"][0]["status"] == "pass"
        assert "T" in data["timestamp"]


# ── Integrity scan ───────────────────────────────────────────────────────────


class TestFindIntegrityIssues:
    def test_clean_graph_has_no_issues(self, healthy_graph, monitor) -> None:
        assert asyncio.run(monitor.find_integrity_issues()) == []

    def test_classifies_every_problem(self, broken_graph, monitor) -> None:
        issues = asyncio.run(monitor.find_integrity_issues())

        found = {(i.type, i.record_id, i.rule) for i in issues}
        assert found == {
            (IssueType.ORPHAN_EDGE, "n1->n2", IssueRule.ORPHAN_CHILD),
            (IssueType.ORPHAN_EDGE, "ghost->a", IssueRule.ORPHAN_PARENT),
            (IssueType.INVALID_DATA, "n3", IssueRule.MISSING_TITLE),
            (IssueType.INVALID_DATA, "k1", IssueRule.INVALID_KIND),
            (IssueType.DUPLICATE, "dup1", IssueRule.DUPLICATE_TITLE_KIND),
            (IssueType.MISSING_REFERENCE, "m1", IssueRule.MISSING_PATH_REFERENCE),
        }

    def test_severities(self, broken_graph, monitor) -> None:
        issues = asyncio.run(monitor.find_integrity_issues())
        by_rule = {i.rule: i for i in issues}
        assert by_rule[IssueRule.ORPHAN_CHILD].severity == Severity.HIGH
        assert by_rule[IssueRule.ORPHAN_CHILD].table == "functions_edges"
        assert by_rule[IssueRule.MISSING_TITLE].severity == Severity.MEDIUM
        assert by_rule[IssueRule.INVALID_KIND].severity == Severity.LOW
        assert by_rule[IssueRule.MISSING_PATH_REFERENCE].severity == Severity.MEDIUM

    def test_descriptions(self, broken_graph, monitor) -> None:
        issues = asyncio.run(monitor.find_integrity_issues())
        by_id = {i.record_id: i for i in issues}
        assert by_id["n1->n2"].description == "Edge references non-existent child node: n2"
        assert by_id["n3"].description == "Node is missing required title field"
        assert "also stored as dup2" in by_id["dup1"].description
        assert "vanished" in by_id["m1"].description
        assert "root" not in by_id["m1"].description.split(": ", 1)[1]

    def test_edge_missing_both_ends_is_one_issue(self, graph, monitor) -> None:
        graph.edge("p", "c")
        issues = asyncio.run(monitor.find_integrity_issues())
        assert len(issues) == 1
        assert issues[0].description == (
            "Edge references non-existent parent node: p and child node: c"
        )

    def test_malformed_path(self, graph, monitor) -> None:
        graph.node("bad", title="Bad", path_json="{not json")
        graph.node("obj", title="Obj", path_json='{"a": 1}')
        issues = asyncio.run(monitor.find_integrity_issues())
        assert {(i.record_id, i.rule) for i in issues} == {
            ("bad", IssueRule.MALFORMED_PATH),
            ("obj", IssueRule.MALFORMED_PATH),
        }
        assert all(i.type == IssueType.INVALID_DATA for i in issues)

    def test_duplicates_need_same_kind(self, graph, monitor) -> None:
        graph.node("x1", title="Same", kind="item")
        graph.node("x2", title="Same", kind="note")
        assert asyncio.run(monitor.find_integrity_issues()) == []

    def test_untitled_nodes_are_not_duplicates(self, graph, monitor) -> None:
        graph.node("u1", title=None)
        graph.node("u2", title=None)
        issues = asyncio.run(monitor.find_integrity_issues())
        assert {i.type for i in issues} == {IssueType.INVALID_DATA}

    def test_scan_does_not_modify_store(self, broken_graph, monitor) -> None:
        before = broken_graph.store.all("SELECT * FROM functions_nodes ORDER BY id")
        asyncio.run(monitor.find_integrity_issues())
        assert broken_graph.store.all("SELECT * FROM functions_nodes ORDER BY id") == before
        assert broken_graph.edge_count() == 4

    def test_unreadable_store_raises_scan_failure(self) -> None:
        m = HealthMonitor(_broken_store())
        try:
            with pytest.raises(ScanFailure, match="database is locked"):
                asyncio.run(m.find_integrity_issues())
        finally:
            m.close()

    def test_issue_to_dict(self, broken_graph, monitor) -> None:
        issues = asyncio.run(monitor.find_integrity_issues())
        data = next(i for i in issues if i.record_id == "n3").to_dict()
        assert data["type"] == "invalid_data"
        assert data["severity"] == "medium"
        assert data["rule"] == "missing_title"
