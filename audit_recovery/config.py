from functools import lru_cache
from typing import ClassVar, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Audit store (SQLite database file monitored and repaired by the loop)
    audit_db_path: str = "database.sqlite"
    audit_tables: str = "permission_audit,permission_audit_reviews,audit_metrics"
    archive_after_days: int = 365

    # Backup archive
    backup_dir: str = "backups"
    backup_glob: str = "*.sqlite,*.db,*.bak"

    # Monitor loop
    monitor_interval_seconds: float = 60.0
    index_check_interval_seconds: float = 3600.0
    shutdown_deadline_seconds: float = 600.0

    # Default alert thresholds (runtime-updatable via update_alert_thresholds)
    threshold_query_latency_p95_ms: float = 1000.0
    threshold_error_rate: float = 0.05
    threshold_memory_usage_ratio: float = 0.85
    threshold_db_size_bytes: int = 1024 * 1024 * 1024
    min_disk_headroom_bytes: int = 512 * 1024 * 1024

    # Alert state tracking
    dedup_window_seconds: float = 300.0
    escalation_threshold: int = 3
    escalation_window_seconds: float = 900.0
    resolved_grace_period_seconds: float = 3600.0

    # Remediation retry policy
    remediation_max_attempts: int = 3
    remediation_backoff: Literal["fixed", "exponential"] = "exponential"
    remediation_backoff_base_seconds: float = 1.0
    remediation_backoff_max_seconds: float = 30.0
    slow_query_rebuild_passes: int = 3

    # Periodic index-optimization heuristic
    index_rebuild_min_writes: int = 10_000
    index_rebuild_latency_drift: float = 1.5

    # Query-result cache
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 1024

    # Metrics source (optional — empty string means sample locally)
    prometheus_url: str = ""
    prometheus_latency_query: str = (
        "histogram_quantile(0.95, sum(rate(audit_query_duration_seconds_bucket[5m])) by (le)) * 1000"
    )
    prometheus_error_rate_query: str = (
        "sum(rate(audit_query_errors_total[5m])) / clamp_min(sum(rate(audit_queries_total[5m])), 1e-9)"
    )
    prometheus_cache_hit_query: str = "audit_cache_hit_ratio"
    prometheus_connections_query: str = "audit_active_connections"

    # SMTP / Email (optional — empty = email disabled)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    alert_recipient_email: str = ""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()
