"""Shared test fixtures."""

from __future__ import annotations

import json
from datetime import datetime

import pytest

from selfheal.health.monitor import HealthMonitor
from selfheal.health.repair import RepairEngine
from selfheal.health.report import HealingReport
from selfheal.health.scheduler import ScheduleConfig, Scheduler
from selfheal.store import SQLiteGraphStore

# Wednesday 03:15 local time. Weekly analysis (day 0) does not fire on it.
WEDNESDAY_3AM = datetime(2026, 10, 14, 3, 15)


class GraphBuilder:
    """Writes raw rows, including broken ones, straight into the store."""

    def __init__(self, store: SQLiteGraphStore) -> None:
        self.store = store

    def node(
        self,
        node_id: str,
        title: str | None = "Node",
        kind: str = "item",
        path: list[str] | None = None,
        path_json: str | None = None,
        updated_at: str | None = "2026-01-01T00:00:00+00:00",
    ) -> None:
        self.store.run(
            "INSERT INTO functions_nodes (id, title, kind, path_json, updated_at) VALUES (?, ?, ?, ?, ?)",
            (node_id, title, kind, path_json if path_json is not None else json.dumps(path or []), updated_at),
        )

    def edge(self, parent_id: str, child_id: str, weight: int = 1, relationship_type: str = "contains") -> None:
        self.store.run(
            "INSERT INTO functions_edges (parent_id, child_id, weight, relationship_type, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (parent_id, child_id, weight, relationship_type, "2026-01-01 00:00:00"),
        )

    def delete_node(self, node_id: str) -> None:
        self.store.run("DELETE FROM functions_nodes WHERE id = ?", (node_id,))

    def get_node(self, node_id: str) -> dict | None:
        return self.store.get("SELECT * FROM functions_nodes WHERE id = ?", (node_id,))

    def get_edge(self, parent_id: str, child_id: str) -> dict | None:
        return self.store.get(
            "SELECT * FROM functions_edges WHERE parent_id = ? AND child_id = ?",
            (parent_id, child_id),
        )

    def edge_count(self) -> int:
        return self.store.get("SELECT COUNT(*) AS n FROM functions_edges")["n"]


@pytest.fixture
def store(tmp_path) -> SQLiteGraphStore:
    return SQLiteGraphStore(tmp_path / "graph.db")


@pytest.fixture
def graph(store) -> GraphBuilder:
    return GraphBuilder(store)


@pytest.fixture
def healthy_graph(graph) -> GraphBuilder:
    """A small consistent tree: root -> a -> b."""
    graph.node("root", title="Root", kind="category")
    graph.node("a", title="A", kind="section", path=["root"])
    graph.node("b", title="B", path=["root", "a"])
    graph.edge("root", "a")
    graph.edge("a", "b")
    return graph


@pytest.fixture
def broken_graph(healthy_graph) -> GraphBuilder:
    """The healthy tree plus one of every detectable problem."""
    g = healthy_graph
    g.node("n1", title="N1")
    g.edge("n1", "n2")  # n2 never existed
    g.edge("ghost", "a")  # ghost never existed
    g.node("n3", title="")  # missing title
    g.node("k1", title="K1", kind="widget")  # invalid kind
    g.node("dup1", title="Same")
    g.node("dup2", title="Same")
    g.node("m1", title="M1", path=["root", "vanished"])  # missing path reference
    return g


@pytest.fixture
def monitor(store):
    m = HealthMonitor(store, probe_timeout_ms=2000)
    yield m
    m.close()


@pytest.fixture
def engine(monitor):
    e = RepairEngine(monitor)
    yield e
    e.close()


@pytest.fixture
def report(store) -> HealingReport:
    return HealingReport(store)


@pytest.fixture
def make_scheduler(monitor, engine, report):
    """Build a Scheduler with a frozen clock and an optional config override."""

    def _make(now: datetime = WEDNESDAY_3AM, **overrides) -> Scheduler:
        config = ScheduleConfig(**overrides)
        return Scheduler(monitor, engine, report, config=config, tick_interval=3600, clock=lambda: now)

    return _make
