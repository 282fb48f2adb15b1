from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Graph store (SQLite file holding functions_nodes / functions_edges / audit_log)
    db_path: str = "data/graph.db"
    required_tables: list[str] = ["functions_nodes", "functions_edges", "audit_log"]

    # Health probes
    probe_timeout_ms: int = 5_000
    storage_log_warn_threshold: int = 10_000  # audit_log rows before storage warns

    # Scheduler tick (coarse, hourly)
    tick_interval_seconds: int = 3600

    # Retention caps (in-memory history)
    max_sessions_kept: int = 100
    max_tasks_kept: int = 100
    max_reports_kept: int = 1000

    # Schedule defaults (overridable at runtime via Scheduler.update_config)
    nightly_check_enabled: bool = True
    nightly_check_hour: int = 3  # 03:00 local time
    weekly_deep_analysis_enabled: bool = True
    weekly_deep_analysis_day: int = 0  # 0 = Sunday … 6 = Saturday
    auto_repair_enabled: bool = True
    auto_repair_dry_run_only: bool = False
    reporting_enabled: bool = True

    # Optional YAML file with schedule overrides (same keys as above)
    schedule_file: str = ""

    # Logging
    log_level: str = "INFO"


settings = Settings()
