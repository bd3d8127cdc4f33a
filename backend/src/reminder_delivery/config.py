from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


@dataclass(frozen=True)
class Settings:
    app_name: str = "Reminder Delivery Service"
    api_prefix: str = "/api/v1"
    delivery_store_backend: str = "inmemory"
    reminder_store_backend: str = "inmemory"
    database_url: str = ""
    retry_base_delay_ms: int = 60_000
    retry_max_delay_ms: int = 3_600_000
    retry_exponential_base: int = 2
    max_attempts: int = 3
    claim_lease_seconds: int = 300
    poll_interval_seconds: int = 60
    escalation_scan_interval_seconds: int = 300
    history_retention_days: int = 30
    worker_enabled: bool = False
    transport_sender_type: str = "stub"
    transport_enabled: bool = False
    transport_api_base_url: str = ""
    transport_api_key: str = ""
    transport_timeout_seconds: int = 30
    transport_rate_limit_per_window: int = 50
    transport_rate_limit_window_ms: int = 1000
    health_backlog_degraded: int = 100
    health_backlog_unhealthy: int = 500
    health_failure_rate_degraded: float = 0.10
    health_failure_rate_unhealthy: float = 0.25
    runtime_config_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("DELIVERY_APP_NAME", "Reminder Delivery Service"),
        api_prefix=os.getenv("DELIVERY_API_PREFIX", "/api/v1"),
        delivery_store_backend=_normalize_mode(
            os.getenv("DELIVERY_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        reminder_store_backend=_normalize_mode(
            os.getenv("REMINDER_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        retry_base_delay_ms=_as_int(os.getenv("DELIVERY_RETRY_BASE_DELAY_MS"), 60_000),
        retry_max_delay_ms=_as_int(os.getenv("DELIVERY_RETRY_MAX_DELAY_MS"), 3_600_000),
        retry_exponential_base=_as_int(os.getenv("DELIVERY_RETRY_EXPONENTIAL_BASE"), 2),
        max_attempts=_as_int(os.getenv("DELIVERY_MAX_ATTEMPTS"), 3),
        claim_lease_seconds=_as_int(os.getenv("DELIVERY_CLAIM_LEASE_SECONDS"), 300),
        poll_interval_seconds=_as_int(os.getenv("DELIVERY_POLL_INTERVAL_SECONDS"), 60),
        escalation_scan_interval_seconds=_as_int(os.getenv("ESCALATION_SCAN_INTERVAL_SECONDS"), 300),
        history_retention_days=_as_int(os.getenv("DELIVERY_HISTORY_RETENTION_DAYS"), 30),
        worker_enabled=_as_bool(os.getenv("DELIVERY_WORKER_ENABLED"), False),
        transport_sender_type=_normalize_mode(
            os.getenv("TRANSPORT_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        transport_enabled=_as_bool(os.getenv("TRANSPORT_ENABLED"), False),
        transport_api_base_url=os.getenv("TRANSPORT_API_BASE_URL", ""),
        transport_api_key=os.getenv("TRANSPORT_API_KEY", ""),
        transport_timeout_seconds=_as_int(os.getenv("TRANSPORT_TIMEOUT_SECONDS"), 30),
        transport_rate_limit_per_window=_as_int(os.getenv("TRANSPORT_RATE_LIMIT_PER_WINDOW"), 50),
        transport_rate_limit_window_ms=_as_int(os.getenv("TRANSPORT_RATE_LIMIT_WINDOW_MS"), 1000),
        health_backlog_degraded=_as_int(os.getenv("HEALTH_BACKLOG_DEGRADED"), 100),
        health_backlog_unhealthy=_as_int(os.getenv("HEALTH_BACKLOG_UNHEALTHY"), 500),
        health_failure_rate_degraded=_as_float(os.getenv("HEALTH_FAILURE_RATE_DEGRADED"), 0.10),
        health_failure_rate_unhealthy=_as_float(os.getenv("HEALTH_FAILURE_RATE_UNHEALTHY"), 0.25),
        runtime_config_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_CONFIG_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    uses_database = "postgres" in {settings.delivery_store_backend, settings.reminder_store_backend}
    if uses_database and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when DELIVERY_STORE_BACKEND or REMINDER_STORE_BACKEND is postgres")
    if settings.transport_sender_type == "http":
        if not settings.transport_api_base_url.strip():
            issues.append("TRANSPORT_API_BASE_URL is required when TRANSPORT_SENDER_TYPE=http")
        if not settings.transport_api_key.strip():
            issues.append("TRANSPORT_API_KEY is required when TRANSPORT_SENDER_TYPE=http")
    if settings.retry_base_delay_ms <= 0:
        issues.append("DELIVERY_RETRY_BASE_DELAY_MS must be positive")
    if settings.retry_max_delay_ms < settings.retry_base_delay_ms:
        issues.append("DELIVERY_RETRY_MAX_DELAY_MS must be at least DELIVERY_RETRY_BASE_DELAY_MS")
    if settings.retry_exponential_base < 1:
        issues.append("DELIVERY_RETRY_EXPONENTIAL_BASE must be at least 1")
    if settings.max_attempts <= 0:
        issues.append("DELIVERY_MAX_ATTEMPTS must be positive")
    if settings.claim_lease_seconds <= 0:
        issues.append("DELIVERY_CLAIM_LEASE_SECONDS must be positive")
    if settings.poll_interval_seconds <= 0 or settings.escalation_scan_interval_seconds <= 0:
        issues.append("DELIVERY_POLL_INTERVAL_SECONDS and ESCALATION_SCAN_INTERVAL_SECONDS must be positive")
    if not 0 <= settings.health_backlog_degraded <= settings.health_backlog_unhealthy:
        issues.append("HEALTH_BACKLOG_DEGRADED must be between 0 and HEALTH_BACKLOG_UNHEALTHY")
    if not 0.0 <= settings.health_failure_rate_degraded <= settings.health_failure_rate_unhealthy <= 1.0:
        issues.append("HEALTH_FAILURE_RATE_DEGRADED and HEALTH_FAILURE_RATE_UNHEALTHY must be ordered within 0..1")
    return tuple(issues)
