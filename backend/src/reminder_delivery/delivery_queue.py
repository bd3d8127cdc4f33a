from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterator
from uuid import uuid4

from .clock import Clock, coerce_utc, now_utc
from .delivery_store import DeliveryQueueItem, DeliveryStore
from .errors import DeliveryNotFoundError
from .retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_LEASE = timedelta(minutes=5)


@dataclass(frozen=True)
class FailureOutcome:
    will_retry: bool
    next_retry_instant: datetime | None
    attempt: int
    recorded: bool = True


@dataclass(frozen=True)
class QueueStats:
    pending: int
    scheduled: int
    delivered: int
    failed: int
    cancelled: int
    retrying: int


class DeliveryQueue:
    """Enqueue, poll, ack/fail and cancel against a DeliveryStore.

    The queue owns the backoff schedule: a failed attempt moves the item in the
    due-instant index instead of holding a worker until the retry is due.
    """

    def __init__(
        self,
        store: DeliveryStore,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Clock = now_utc,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
    ) -> None:
        self._store = store
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._claim_lease = claim_lease

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def _now(self) -> datetime:
        return coerce_utc(self._clock())

    def enqueue(
        self,
        reminder_id: str,
        recipient_id: str,
        instant: datetime,
        timezone: str,
        display_time: str,
        message: str,
        max_attempts: int | None = None,
    ) -> str:
        policy = self._retry_policy.with_max_attempts(max_attempts)
        now = self._now()
        item = DeliveryQueueItem(
            item_id=str(uuid4()),
            reminder_id=reminder_id,
            recipient_id=recipient_id,
            due_instant=coerce_utc(instant),
            recipient_timezone=timezone,
            recipient_display_time=display_time,
            message_content=message,
            attempt=0,
            max_attempts=policy.max_attempts,
            created_at=now,
            updated_at=now,
        )
        self._store.put(item)
        logger.info(
            "queued delivery %s for reminder %s to %s at %s",
            item.item_id,
            reminder_id,
            recipient_id,
            item.due_instant.isoformat(),
        )
        return item.item_id

    def poll_due(self, now: datetime | None = None) -> Iterator[DeliveryQueueItem]:
        cutoff = coerce_utc(now) if now is not None else self._now()
        for item_id in self._store.scan_due(cutoff):
            item = self._store.get(item_id)
            # Removed or rescheduled since the index entry was read.
            if item is None or not item.is_live or item.indexed_instant > cutoff:
                continue
            yield item

    def claim(self, item: DeliveryQueueItem) -> bool:
        return self._store.claim(
            item.item_id,
            item.attempt,
            now=self._now(),
            lease=self._claim_lease,
        )

    def record_success(self, item_id: str, *, now: datetime | None = None) -> bool:
        item = self._store.get(item_id)
        if item is None:
            return False
        now = coerce_utc(now) if now is not None else self._now()
        removed = self._store.remove(
            replace(item, updated_at=now, claimed_attempt=None, claimed_at=None),
            outcome="delivered",
            recorded_at=now,
        )
        if removed:
            logger.info("delivered %s for reminder %s", item_id, item.reminder_id)
        return removed

    def record_failure(
        self,
        item_id: str,
        error: str,
        *,
        attempt: int | None = None,
        now: datetime | None = None,
    ) -> FailureOutcome:
        """Count one failed try of ``attempt`` (default: the stored attempt).

        Only the first report for a given attempt is recorded; a late report
        from a worker whose claim lease expired, or one for an item cancelled
        meanwhile, returns ``recorded=False`` and changes nothing.
        """
        item = self._store.get(item_id)
        if item is None:
            return FailureOutcome(will_retry=False, next_retry_instant=None, attempt=0, recorded=False)
        expected = item.attempt if attempt is None else attempt
        ignored = FailureOutcome(will_retry=False, next_retry_instant=None, attempt=item.attempt, recorded=False)
        if item.attempt != expected:
            logger.info("ignored stale failure report for %s attempt %d", item_id, expected + 1)
            return ignored

        now = coerce_utc(now) if now is not None else self._now()
        attempt = expected + 1
        if RetryPolicy.should_retry(attempt, item.max_attempts):
            next_retry = now + self._retry_policy.next_delay(attempt)
            updated = replace(
                item,
                attempt=attempt,
                next_retry_instant=next_retry,
                last_error=error,
                updated_at=now,
                claimed_attempt=None,
                claimed_at=None,
            )
            if not self._store.move_due_index(updated, item.indexed_instant, next_retry, expected_attempt=expected):
                logger.info("failure report for %s lost to a concurrent change", item_id)
                return ignored
            logger.warning(
                "delivery %s attempt %d/%d failed, retrying at %s: %s",
                item_id,
                attempt,
                item.max_attempts,
                next_retry.isoformat(),
                error,
            )
            return FailureOutcome(will_retry=True, next_retry_instant=next_retry, attempt=attempt)

        exhausted = replace(
            item,
            attempt=attempt,
            next_retry_instant=None,
            last_error=error,
            updated_at=now,
            claimed_attempt=None,
            claimed_at=None,
        )
        if not self._store.remove(exhausted, outcome="failed", recorded_at=now, expected_attempt=expected):
            logger.info("failure report for %s lost to a concurrent change", item_id)
            return ignored
        logger.error(
            "delivery %s for reminder %s exhausted after %d attempts: %s",
            item_id,
            item.reminder_id,
            attempt,
            error,
        )
        return FailureOutcome(will_retry=False, next_retry_instant=None, attempt=attempt)

    def cancel(self, reminder_id: str) -> DeliveryQueueItem:
        item = self._store.find_by_reminder(reminder_id)
        if item is None:
            raise DeliveryNotFoundError(f"no live delivery for reminder: {reminder_id}")
        now = self._now()
        cancelled = replace(item, updated_at=now, claimed_attempt=None, claimed_at=None)
        if not self._store.remove(cancelled, outcome="cancelled", recorded_at=now):
            raise DeliveryNotFoundError(f"no live delivery for reminder: {reminder_id}")
        logger.info("cancelled delivery %s for reminder %s", item.item_id, reminder_id)
        return cancelled

    def restore(self, item: DeliveryQueueItem) -> None:
        """Put a previously cancelled item back under its original id."""
        self._store.put(replace(item, claimed_attempt=None, claimed_at=None))

    def find_by_reminder(self, reminder_id: str) -> DeliveryQueueItem | None:
        return self._store.find_by_reminder(reminder_id)

    def list_for_recipient(self, recipient_id: str) -> list[DeliveryQueueItem]:
        items = self._store.list_by_recipient(recipient_id)
        return sorted(items, key=lambda item: (item.due_instant, item.item_id))

    def stats(self, now: datetime | None = None) -> QueueStats:
        cutoff = coerce_utc(now) if now is not None else self._now()
        pending = scheduled = retrying = 0
        for item in self._store.iter_live():
            if item.due_instant <= cutoff:
                pending += 1
            else:
                scheduled += 1
            if item.attempt > 0:
                retrying += 1
        return QueueStats(
            pending=pending,
            scheduled=scheduled,
            delivered=self._store.count_history("delivered"),
            failed=self._store.count_history("failed"),
            cancelled=self._store.count_history("cancelled"),
            retrying=retrying,
        )

    def prune_history(self, retention: timedelta, now: datetime | None = None) -> int:
        cutoff = (coerce_utc(now) if now is not None else self._now()) - retention
        removed = self._store.prune_history(cutoff)
        if removed:
            logger.info("pruned %d history records older than %s", removed, cutoff.isoformat())
        return removed
