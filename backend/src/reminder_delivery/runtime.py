from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from .clock import Clock, now_utc
from .config import Settings
from .delivery_queue import DeliveryQueue
from .delivery_service import DeliveryService
from .delivery_store import DeliveryStore
from .delivery_store_backends import create_delivery_store
from .escalation import EscalationEngine
from .health import HealthReport, HealthThresholds, check_health
from .rate_limiter import RateLimiter
from .reminders import ReminderRepository, create_reminder_repository
from .retry_policy import RetryPolicy
from .time_resolver import TimeResolver
from .transport import Transport, create_transport


@dataclass(frozen=True)
class Runtime:
    settings: Settings
    store: DeliveryStore
    reminders: ReminderRepository
    queue: DeliveryQueue
    resolver: TimeResolver
    transport: Transport
    service: DeliveryService
    engine: EscalationEngine
    health_thresholds: HealthThresholds
    clock: Clock = now_utc

    def health(self) -> HealthReport:
        return check_health(self.queue, self.health_thresholds, clock=self.clock)

    def reset(self) -> None:
        self.store.reset()
        self.reminders.reset()


def build_runtime(
    settings: Settings,
    *,
    clock: Clock = now_utc,
    transport: Transport | None = None,
) -> Runtime:
    """Construct every component once and wire them together explicitly."""
    store = create_delivery_store(
        backend=settings.delivery_store_backend,
        database_url=settings.database_url,
    )
    reminders = create_reminder_repository(
        backend=settings.reminder_store_backend,
        database_url=settings.database_url,
    )
    retry_policy = RetryPolicy(
        base_delay_ms=settings.retry_base_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
        exponential_base=settings.retry_exponential_base,
        max_attempts=settings.max_attempts,
    )
    queue = DeliveryQueue(
        store,
        retry_policy=retry_policy,
        clock=clock,
        claim_lease=timedelta(seconds=settings.claim_lease_seconds),
    )
    resolver = TimeResolver(clock=clock)
    if transport is None:
        transport = create_transport(
            sender_type=settings.transport_sender_type,
            enabled=settings.transport_enabled,
            base_url=settings.transport_api_base_url,
            api_key=settings.transport_api_key,
            timeout_seconds=settings.transport_timeout_seconds,
            rate_limiter=RateLimiter(
                default_limit=settings.transport_rate_limit_per_window,
                default_window_ms=settings.transport_rate_limit_window_ms,
                clock=clock,
            ),
            clock=clock,
        )
    service = DeliveryService(
        queue=queue,
        resolver=resolver,
        transport=transport,
        clock=clock,
        reminders=reminders,
        history_retention=timedelta(days=settings.history_retention_days),
    )
    engine = EscalationEngine(reminders=reminders, service=service, clock=clock)
    return Runtime(
        settings=settings,
        store=store,
        reminders=reminders,
        queue=queue,
        resolver=resolver,
        transport=transport,
        service=service,
        engine=engine,
        health_thresholds=HealthThresholds.from_settings(settings),
        clock=clock,
    )
