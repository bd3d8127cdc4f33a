from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from sqlalchemy.exc import SQLAlchemyError

from .clock import Clock, coerce_utc, now_utc
from .config import Settings
from .delivery_queue import DeliveryQueue, QueueStats
from .errors import DeliveryError

logger = logging.getLogger(__name__)

HealthStatusName = Literal["healthy", "degraded", "unhealthy"]

_SEVERITY: dict[HealthStatusName, int] = {"healthy": 0, "degraded": 1, "unhealthy": 2}


@dataclass(frozen=True)
class HealthThresholds:
    backlog_degraded: int = 100
    backlog_unhealthy: int = 500
    failure_rate_degraded: float = 0.10
    failure_rate_unhealthy: float = 0.25

    @classmethod
    def from_settings(cls, settings: Settings) -> HealthThresholds:
        return cls(
            backlog_degraded=settings.health_backlog_degraded,
            backlog_unhealthy=settings.health_backlog_unhealthy,
            failure_rate_degraded=settings.health_failure_rate_degraded,
            failure_rate_unhealthy=settings.health_failure_rate_unhealthy,
        )


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatusName
    store_reachable: bool
    backlog: int
    failure_rate: float
    stats: QueueStats | None
    issues: tuple[str, ...]
    checked_at: datetime


def failure_rate(stats: QueueStats) -> float:
    """Share of finished deliveries that ended ``failed``; 0.0 before any finish."""
    finished = stats.delivered + stats.failed
    return stats.failed / finished if finished else 0.0


def _grade(value: float, degraded: float, unhealthy: float) -> HealthStatusName:
    if value > unhealthy:
        return "unhealthy"
    if value > degraded:
        return "degraded"
    return "healthy"


def check_health(
    queue: DeliveryQueue,
    thresholds: HealthThresholds | None = None,
    *,
    now: datetime | None = None,
    clock: Clock = now_utc,
) -> HealthReport:
    """Read queue stats and grade the backlog of due items and the failure rate.

    Reading the stats touches every store table, so it doubles as the
    reachability check: any store error yields an ``unhealthy`` report
    instead of propagating.
    """
    thresholds = thresholds or HealthThresholds()
    checked_at = coerce_utc(now) if now is not None else coerce_utc(clock())
    try:
        stats = queue.stats(checked_at)
    except (DeliveryError, SQLAlchemyError) as exc:
        logger.error("health check could not read the delivery store: %s", exc)
        return HealthReport(
            status="unhealthy",
            store_reachable=False,
            backlog=0,
            failure_rate=0.0,
            stats=None,
            issues=(f"delivery store unreachable: {exc}",),
            checked_at=checked_at,
        )

    rate = failure_rate(stats)
    backlog_status = _grade(stats.pending, thresholds.backlog_degraded, thresholds.backlog_unhealthy)
    rate_status = _grade(rate, thresholds.failure_rate_degraded, thresholds.failure_rate_unhealthy)
    issues: list[str] = []
    if backlog_status != "healthy":
        issues.append(f"{stats.pending} due deliveries waiting ({backlog_status})")
    if rate_status != "healthy":
        issues.append(f"failure rate {rate:.1%} ({rate_status})")
    status = max(backlog_status, rate_status, key=_SEVERITY.__getitem__)
    if status != "healthy":
        logger.warning("delivery health %s: %s", status, "; ".join(issues))
    return HealthReport(
        status=status,
        store_reachable=True,
        backlog=stats.pending,
        failure_rate=rate,
        stats=stats,
        issues=tuple(issues),
        checked_at=checked_at,
    )
