"""Entry point for the self-healing subsystem.

Builds the store → monitor → repair engine → report → scheduler chain once
and exposes it through a small operator CLI.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from selfheal.config import Settings, settings
from selfheal.health.monitor import CheckStatus, HealthCheckResult, HealthMonitor, HealthStatus, ScanFailure
from selfheal.health.repair import RepairEngine, RepairSession, SessionFailure
from selfheal.health.report import HealingReport
from selfheal.health.scheduler import ScheduleConfig, Scheduler, load_schedule_config
from selfheal.store import SQLiteGraphStore

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

_STATUS_STYLE = {
    HealthStatus.HEALTHY: "bold green",
    HealthStatus.DEGRADED: "bold yellow",
    HealthStatus.UNHEALTHY: "bold red",
}
_CHECK_STYLE = {CheckStatus.PASS: "green", CheckStatus.WARN: "yellow", CheckStatus.FAIL: "red"}


@dataclass
class Components:
    """Everything the host process wires together at startup."""

    store: SQLiteGraphStore
    monitor: HealthMonitor
    engine: RepairEngine
    report: HealingReport
    scheduler: Scheduler

    def close(self) -> None:
        self.engine.close()
        self.monitor.close()


def build_components(cfg: Settings = settings) -> Components:
    """Construct and wire the subsystem from settings."""
    store = SQLiteGraphStore(cfg.db_path)
    monitor = HealthMonitor(
        store,
        probe_timeout_ms=cfg.probe_timeout_ms,
        required_tables=cfg.required_tables,
        storage_log_warn_threshold=cfg.storage_log_warn_threshold,
    )
    engine = RepairEngine(monitor, max_sessions_kept=cfg.max_sessions_kept)
    report = HealingReport(store, max_reports_kept=cfg.max_reports_kept)

    schedule = ScheduleConfig.from_settings(cfg)
    if cfg.schedule_file:
        schedule = load_schedule_config(cfg.schedule_file, base=schedule)

    scheduler = Scheduler(
        monitor,
        engine,
        report,
        config=schedule,
        tick_interval=cfg.tick_interval_seconds,
        max_tasks_kept=cfg.max_tasks_kept,
    )
    return Components(store=store, monitor=monitor, engine=engine, report=report, scheduler=scheduler)


# ── Rendering ────────────────────────────────────────────────────────────────


def print_health(result: HealthCheckResult) -> None:
    table = Table(title="Health probes")
    table.add_column("Probe")
    table.add_column("Status")
    table.add_column("Message")
    table.add_column("ms", justify="right")
    for check in result.checks:
        name = f"{check.name} *" if check.critical else check.name
        table.add_row(
            name,
            f"[{_CHECK_STYLE[check.status]}]{check.status.value}[/]",
            check.message,
            f"{check.duration_ms:.1f}",
        )
    console.print(table)
    console.print(Panel(result.summary, title=result.status.value, style=_STATUS_STYLE[result.status]))


def print_session(session: RepairSession) -> None:
    table = Table(title=f"Repair session {session.id}" + (" (dry run)" if session.dry_run else ""))
    table.add_column("Type")
    table.add_column("Record")
    table.add_column("OK")
    table.add_column("Action")
    table.add_column("Note")
    for r in session.results:
        table.add_row(
            r.issue.type.value,
            r.issue.record_id,
            "[green]yes[/]" if r.success else "[red]no[/]",
            r.action,
            r.error or "",
        )
    console.print(table)
    console.print(
        f"[dim]{session.status.value}: {session.success_count}/{len(session.results)} successful[/dim]"
    )


# ── Commands ─────────────────────────────────────────────────────────────────


async def _check(components: Components) -> int:
    task = await components.scheduler.run_manual_check()
    if not isinstance(task.result, HealthCheckResult):
        console.print(f"[red]Manual check failed: {task.error}[/red]")
        return 1
    print_health(task.result)
    return 0 if task.result.status == HealthStatus.HEALTHY else 1


async def _scan(components: Components) -> int:
    try:
        issues = await components.monitor.find_integrity_issues()
    except ScanFailure as e:
        console.print(f"[red]{e}[/red]")
        return 1
    if not issues:
        console.print("[green]No integrity issues found[/green]")
        return 0
    table = Table(title=f"{len(issues)} integrity issues")
    table.add_column("Type")
    table.add_column("Severity")
    table.add_column("Record")
    table.add_column("Description")
    for issue in issues:
        table.add_row(issue.type.value, issue.severity.value, issue.record_id, issue.description)
    console.print(table)
    return 1


async def _repair(components: Components, dry_run: bool) -> int:
    try:
        session = await components.engine.start_repair_session(dry_run=dry_run)
    except SessionFailure as e:
        console.print(f"[red]{e}[/red]")
        return 1
    print_session(session)
    return 0


async def _serve(components: Components) -> int:
    scheduler = components.scheduler
    await scheduler.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await scheduler.stop()
        await scheduler.join()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Graph store self-healing")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("check", help="Run the health probes once")
    sub.add_parser("scan", help="List current integrity issues")
    repair_parser = sub.add_parser("repair", help="Run a repair session")
    repair_parser.add_argument("--dry-run", action="store_true", help="Record intended fixes without changing data")
    sub.add_parser("serve", help="Run the scheduler until interrupted")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    components = build_components(settings)
    try:
        if args.command == "check":
            return asyncio.run(_check(components))
        if args.command == "scan":
            return asyncio.run(_scan(components))
        if args.command == "repair":
            return asyncio.run(_repair(components, args.dry_run))
        console.print(Panel(f"Self-healing scheduler on {components.store.db_path}", style="bold green"))
        try:
            return asyncio.run(_serve(components))
        except KeyboardInterrupt:
            console.print("[dim]Interrupted[/dim]")
            return 0
    finally:
        components.close()


if __name__ == "__main__":
    sys.exit(main())
