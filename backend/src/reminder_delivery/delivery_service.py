from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Literal, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from .clock import Clock, coerce_utc, now_utc
from .delivery_queue import DeliveryQueue, QueueStats
from .delivery_store import DeliveryQueueItem
from .errors import DeliveryError, DeliveryNotFoundError, StoreFailure, ValidationFailure
from .reminders import ReminderRepository
from .results import Failure, Ok, Result
from .time_resolver import ResolvedTime, TimeResolver
from .transport import Transport, TransportResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_HISTORY_RETENTION = timedelta(days=30)

LiveDeliveryStatus = Literal["scheduled", "pending", "retrying"]


@dataclass(frozen=True)
class DeliveryRequest:
    """Either ``scheduled_time`` (recipient wall clock) or ``due_instant`` (absolute UTC) is required."""

    reminder_id: str
    recipient_id: str
    message: str
    timezone: str
    scheduled_time: str | None = None
    due_instant: datetime | None = None
    max_attempts: int | None = None


@dataclass(frozen=True)
class DeliveryUpdate:
    scheduled_time: str | None = None
    timezone: str | None = None
    recipient_id: str | None = None
    message: str | None = None
    max_attempts: int | None = None


@dataclass(frozen=True)
class ScheduledDelivery:
    item_id: str
    reminder_id: str
    recipient_id: str
    instant: datetime
    display_time: str
    timezone: str


@dataclass(frozen=True)
class ProcessSummary:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class DeliveryStatusInfo:
    reminder_id: str
    status: LiveDeliveryStatus
    item: DeliveryQueueItem


class DeliveryService:
    """Produced interface of the delivery core.

    Every public operation returns ``Ok`` or ``Failure``; taxonomy errors and
    persistence errors never escape.
    """

    def __init__(
        self,
        *,
        queue: DeliveryQueue,
        resolver: TimeResolver,
        transport: Transport,
        clock: Clock = now_utc,
        reminders: ReminderRepository | None = None,
        history_retention: timedelta = DEFAULT_HISTORY_RETENTION,
    ) -> None:
        self._queue = queue
        self._resolver = resolver
        self._transport = transport
        self._clock = clock
        self._reminders = reminders
        self._history_retention = history_retention

    @property
    def queue(self) -> DeliveryQueue:
        return self._queue

    @property
    def resolver(self) -> TimeResolver:
        return self._resolver

    def _now(self) -> datetime:
        return coerce_utc(self._clock())

    def _run(self, operation: str, action: Callable[[], T]) -> Result[T]:
        try:
            return Ok(action())
        except ValidationFailure as exc:
            logger.warning("%s rejected (%s): %s", operation, exc.reason, exc.message)
            return Failure(exc)
        except StoreFailure as exc:
            logger.error("%s failed: %s", operation, exc.message)
            return Failure(exc)
        except DeliveryError as exc:
            return Failure(exc)
        except SQLAlchemyError as exc:
            logger.error("%s failed: %s", operation, exc)
            return Failure(StoreFailure(f"{operation} failed: {exc}"))

    def _resolve(self, request: DeliveryRequest) -> ResolvedTime:
        if not request.reminder_id.strip():
            raise ValidationFailure("invalid_request", "reminder_id is required")
        if not request.recipient_id.strip():
            raise ValidationFailure("invalid_request", "recipient_id is required")
        if not request.message.strip():
            raise ValidationFailure("invalid_request", "message is required")
        if request.max_attempts is not None and request.max_attempts <= 0:
            raise ValidationFailure("invalid_request", "max_attempts must be positive")
        if request.scheduled_time is not None:
            return self._resolver.resolve(request.scheduled_time, request.timezone)
        if request.due_instant is not None:
            return self._resolver.describe(request.due_instant, request.timezone)
        raise ValidationFailure("invalid_request", "scheduled_time or due_instant is required")

    def _enqueue(self, request: DeliveryRequest, resolved: ResolvedTime) -> ScheduledDelivery:
        item_id = self._queue.enqueue(
            request.reminder_id,
            request.recipient_id,
            resolved.instant,
            resolved.timezone,
            resolved.display_time,
            request.message,
            request.max_attempts,
        )
        return ScheduledDelivery(
            item_id=item_id,
            reminder_id=request.reminder_id,
            recipient_id=request.recipient_id,
            instant=resolved.instant,
            display_time=resolved.display_time,
            timezone=resolved.timezone,
        )

    def schedule_delivery(self, request: DeliveryRequest) -> Result[ScheduledDelivery]:
        return self._run("schedule_delivery", lambda: self._enqueue(request, self._resolve(request)))

    def _send(self, item: DeliveryQueueItem) -> TransportResult:
        try:
            return self._transport.deliver(
                item.recipient_id,
                item.message_content,
                item.reminder_id,
                idempotency_key=item.item_id,
            )
        except Exception as exc:
            return TransportResult(
                success=False,
                attempted_at=self._now(),
                error_code="transport_exception",
                error_message=str(exc) or type(exc).__name__,
            )

    def _mark_sent(self, reminder_id: str, at: datetime) -> None:
        if self._reminders is None:
            return
        record = self._reminders.get(reminder_id)
        if record is None or record.status != "pending":
            return
        if self._reminders.transition(reminder_id, expected="pending", new_status="sent", at=at) is not None:
            logger.info("reminder %s marked sent", reminder_id)

    def _process(self, cutoff: datetime, now: datetime | None) -> ProcessSummary:
        processed = successful = failed = skipped = 0
        for item in self._queue.poll_due(cutoff):
            if not self._queue.claim(item):
                skipped += 1
                continue
            processed += 1
            outcome = self._send(item)
            if outcome.success:
                # The reminder leaves "pending" before its queue item disappears.
                self._mark_sent(item.reminder_id, outcome.attempted_at)
                self._queue.record_success(item.item_id, now=now)
                successful += 1
                continue
            self._queue.record_failure(item.item_id, outcome.error, attempt=item.attempt, now=now)
            failed += 1
        return ProcessSummary(processed=processed, successful=successful, failed=failed, skipped=skipped)

    def process_due_deliveries(self, now: datetime | None = None) -> Result[ProcessSummary]:
        now = coerce_utc(now) if now is not None else None
        cutoff = now if now is not None else self._now()
        try:
            summary = self._run("process_due_deliveries", lambda: self._process(cutoff, now))
        except Exception as exc:
            logger.exception("delivery cycle aborted")
            return Failure(DeliveryError(f"delivery cycle aborted: {exc}"))
        if isinstance(summary, Ok) and summary.value.processed:
            logger.info(
                "delivery cycle processed=%d successful=%d failed=%d skipped=%d",
                summary.value.processed,
                summary.value.successful,
                summary.value.failed,
                summary.value.skipped,
            )
        return summary

    def cancel_delivery(self, reminder_id: str) -> Result[None]:
        def _cancel() -> None:
            self._queue.cancel(reminder_id)

        return self._run("cancel_delivery", _cancel)

    def _update(self, reminder_id: str, updates: DeliveryUpdate) -> ScheduledDelivery:
        existing = self._queue.find_by_reminder(reminder_id)
        if existing is None:
            raise DeliveryNotFoundError(f"no live delivery for reminder: {reminder_id}")

        timezone = updates.timezone or existing.recipient_timezone
        scheduled_time = updates.scheduled_time
        if scheduled_time is None and updates.timezone is not None:
            scheduled_time = self._resolver.local_wall_clock(existing.due_instant, existing.recipient_timezone)
        request = DeliveryRequest(
            reminder_id=reminder_id,
            recipient_id=updates.recipient_id or existing.recipient_id,
            message=updates.message or existing.message_content,
            timezone=timezone,
            scheduled_time=scheduled_time,
            due_instant=existing.due_instant if scheduled_time is None else None,
            max_attempts=updates.max_attempts or existing.max_attempts,
        )
        resolved = self._resolve(request)

        cancelled = self._queue.cancel(reminder_id)
        try:
            return self._enqueue(request, resolved)
        except DeliveryError:
            self._queue.restore(cancelled)
            raise

    def update_delivery(self, reminder_id: str, updates: DeliveryUpdate) -> Result[ScheduledDelivery]:
        return self._run("update_delivery", lambda: self._update(reminder_id, updates))

    def get_queue_stats(self, now: datetime | None = None) -> Result[QueueStats]:
        return self._run("get_queue_stats", lambda: self._queue.stats(now or self._now()))

    def get_user_reminders(self, recipient_id: str) -> Result[list[DeliveryQueueItem]]:
        return self._run("get_user_reminders", lambda: self._queue.list_for_recipient(recipient_id))

    def _status(self, reminder_id: str) -> DeliveryStatusInfo:
        item = self._queue.find_by_reminder(reminder_id)
        if item is None:
            raise DeliveryNotFoundError(f"no live delivery for reminder: {reminder_id}")
        status: LiveDeliveryStatus
        if item.attempt > 0:
            status = "retrying"
        elif item.due_instant <= self._now():
            status = "pending"
        else:
            status = "scheduled"
        return DeliveryStatusInfo(reminder_id=reminder_id, status=status, item=item)

    def get_delivery_status(self, reminder_id: str) -> Result[DeliveryStatusInfo]:
        return self._run("get_delivery_status", lambda: self._status(reminder_id))

    def prune_history(self, now: datetime | None = None) -> Result[int]:
        return self._run(
            "prune_history",
            lambda: self._queue.prune_history(self._history_retention, now or self._now()),
        )
