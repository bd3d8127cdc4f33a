from __future__ import annotations

from bisect import bisect_left, bisect_right, insort
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from threading import Lock
from typing import Iterable, Iterator, Literal, Protocol

from .clock import coerce_utc, now_utc, to_epoch_ms
from .errors import DeliveryConflictError

HistoryOutcome = Literal["delivered", "failed", "cancelled"]
HISTORY_OUTCOMES: tuple[HistoryOutcome, ...] = ("delivered", "failed", "cancelled")


@dataclass(frozen=True)
class DeliveryQueueItem:
    item_id: str
    reminder_id: str
    recipient_id: str
    due_instant: datetime
    recipient_timezone: str
    recipient_display_time: str
    message_content: str
    attempt: int
    max_attempts: int
    created_at: datetime
    updated_at: datetime
    next_retry_instant: datetime | None = None
    last_error: str | None = None
    claimed_attempt: int | None = None
    claimed_at: datetime | None = None

    @property
    def indexed_instant(self) -> datetime:
        return self.next_retry_instant or self.due_instant

    @property
    def is_live(self) -> bool:
        return self.attempt < self.max_attempts


@dataclass(frozen=True)
class DeliveryHistoryRecord:
    item: DeliveryQueueItem
    outcome: HistoryOutcome
    recorded_at: datetime


def claim_is_held(item: DeliveryQueueItem, *, attempt: int, now: datetime, lease: timedelta) -> bool:
    if item.claimed_attempt != attempt or item.claimed_at is None:
        return False
    return coerce_utc(item.claimed_at) + lease > coerce_utc(now)


class DeliveryStore(Protocol):
    def reset(self) -> None: ...

    def put(self, item: DeliveryQueueItem) -> None: ...

    def remove(
        self,
        item: DeliveryQueueItem,
        *,
        outcome: HistoryOutcome | None = None,
        recorded_at: datetime | None = None,
        expected_attempt: int | None = None,
    ) -> bool: ...

    def move_due_index(
        self,
        item: DeliveryQueueItem,
        old_instant: datetime,
        new_instant: datetime,
        *,
        expected_attempt: int | None = None,
    ) -> bool: ...

    def scan_due(self, before_instant: datetime) -> Iterator[str]: ...

    def get(self, item_id: str) -> DeliveryQueueItem | None: ...

    def find_by_reminder(self, reminder_id: str) -> DeliveryQueueItem | None: ...

    def list_by_recipient(self, recipient_id: str) -> list[DeliveryQueueItem]: ...

    def iter_live(self) -> Iterator[DeliveryQueueItem]: ...

    def claim(self, item_id: str, expected_attempt: int, *, now: datetime, lease: timedelta) -> bool: ...

    def count_history(self, outcome: HistoryOutcome) -> int: ...

    def list_history(self, outcome: HistoryOutcome) -> list[DeliveryHistoryRecord]: ...

    def prune_history(self, older_than: datetime) -> int: ...


Key = tuple

_PRIMARY = "queue"
_BY_INSTANT = "queue_by_instant"
_BY_RECIPIENT = "queue_by_recipient"
_BY_REMINDER = "queue_by_reminder"
_HISTORY = "history"


class QueueIndexes:
    """Key shapes for the primary record and its three derived indexes."""

    @staticmethod
    def primary(item_id: str) -> Key:
        return (_PRIMARY, item_id)

    @staticmethod
    def due(instant: datetime, item_id: str) -> Key:
        return (_BY_INSTANT, to_epoch_ms(instant), item_id)

    @staticmethod
    def recipient(recipient_id: str, item_id: str) -> Key:
        return (_BY_RECIPIENT, recipient_id, item_id)

    @staticmethod
    def reminder(reminder_id: str) -> Key:
        return (_BY_REMINDER, reminder_id)

    @staticmethod
    def history(outcome: HistoryOutcome, item_id: str) -> Key:
        return (_HISTORY, outcome, item_id)

    @classmethod
    def entries_for(cls, item: DeliveryQueueItem) -> dict[Key, object]:
        return {
            cls.primary(item.item_id): item,
            cls.due(item.indexed_instant, item.item_id): item.item_id,
            cls.recipient(item.recipient_id, item.item_id): item.item_id,
            cls.reminder(item.reminder_id): item.item_id,
        }

    @classmethod
    def keys_for(cls, item: DeliveryQueueItem) -> list[Key]:
        return list(cls.entries_for(item))


class _OrderedKeySpace:
    """Ordered key-value map with all-or-nothing multi-key commits.

    Callers hold the owning store's lock around every call.
    """

    def __init__(self) -> None:
        self._values: dict[Key, object] = {}
        self._keys: list[Key] = []

    def clear(self) -> None:
        self._values.clear()
        self._keys.clear()

    def get(self, key: Key) -> object | None:
        return self._values.get(key)

    def commit(self, *, sets: dict[Key, object] | None = None, deletes: Iterable[Key] = ()) -> None:
        for key in deletes:
            if key in self._values:
                del self._values[key]
                self._keys.pop(bisect_left(self._keys, key))
        for key, value in (sets or {}).items():
            if key not in self._values:
                insort(self._keys, key)
            self._values[key] = value

    def first_after(self, cursor: Key, prefix: Key) -> Key | None:
        index = bisect_right(self._keys, cursor)
        if index >= len(self._keys):
            return None
        key = self._keys[index]
        if key[: len(prefix)] != prefix:
            return None
        return key

    def scan(self, prefix: Key) -> list[tuple[Key, object]]:
        result: list[tuple[Key, object]] = []
        index = bisect_left(self._keys, prefix)
        while index < len(self._keys):
            key = self._keys[index]
            if key[: len(prefix)] != prefix:
                break
            result.append((key, self._values[key]))
            index += 1
        return result


class InMemoryDeliveryStore:
    """Process-local store laid out exactly like the persisted key families."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._space = _OrderedKeySpace()

    def reset(self) -> None:
        with self._lock:
            self._space.clear()

    def _stored(self, item_id: str) -> DeliveryQueueItem | None:
        value = self._space.get(QueueIndexes.primary(item_id))
        return value if isinstance(value, DeliveryQueueItem) else None

    def put(self, item: DeliveryQueueItem) -> None:
        with self._lock:
            existing_id = self._space.get(QueueIndexes.reminder(item.reminder_id))
            if existing_id is not None:
                raise DeliveryConflictError(item.reminder_id, str(existing_id))
            if self._stored(item.item_id) is not None:
                raise DeliveryConflictError(item.reminder_id, item.item_id)
            self._space.commit(sets=QueueIndexes.entries_for(item))

    def remove(
        self,
        item: DeliveryQueueItem,
        *,
        outcome: HistoryOutcome | None = None,
        recorded_at: datetime | None = None,
        expected_attempt: int | None = None,
    ) -> bool:
        with self._lock:
            stored = self._stored(item.item_id)
            if stored is None:
                return False
            if expected_attempt is not None and stored.attempt != expected_attempt:
                return False
            sets: dict[Key, object] = {}
            if outcome is not None:
                sets[QueueIndexes.history(outcome, item.item_id)] = DeliveryHistoryRecord(
                    item=item,
                    outcome=outcome,
                    recorded_at=coerce_utc(recorded_at or now_utc()),
                )
            self._space.commit(sets=sets, deletes=QueueIndexes.keys_for(stored))
            return True

    def move_due_index(
        self,
        item: DeliveryQueueItem,
        old_instant: datetime,
        new_instant: datetime,
        *,
        expected_attempt: int | None = None,
    ) -> bool:
        with self._lock:
            stored = self._stored(item.item_id)
            if stored is None:
                return False
            if expected_attempt is not None and stored.attempt != expected_attempt:
                return False
            deletes = {
                QueueIndexes.due(old_instant, item.item_id),
                QueueIndexes.due(stored.indexed_instant, item.item_id),
            }
            self._space.commit(
                deletes=deletes,
                sets={
                    QueueIndexes.primary(item.item_id): item,
                    QueueIndexes.due(new_instant, item.item_id): item.item_id,
                },
            )
            return True

    def scan_due(self, before_instant: datetime) -> Iterator[str]:
        cutoff = to_epoch_ms(before_instant)
        prefix: Key = (_BY_INSTANT,)
        cursor: Key = prefix
        while True:
            with self._lock:
                key = self._space.first_after(cursor, prefix)
            if key is None or key[1] > cutoff:
                return
            cursor = key
            yield key[2]

    def get(self, item_id: str) -> DeliveryQueueItem | None:
        with self._lock:
            return self._stored(item_id)

    def find_by_reminder(self, reminder_id: str) -> DeliveryQueueItem | None:
        with self._lock:
            item_id = self._space.get(QueueIndexes.reminder(reminder_id))
            if item_id is None:
                return None
            return self._stored(str(item_id))

    def list_by_recipient(self, recipient_id: str) -> list[DeliveryQueueItem]:
        with self._lock:
            entries = self._space.scan((_BY_RECIPIENT, recipient_id))
            items = [self._stored(str(value)) for _, value in entries]
        return [item for item in items if item is not None]

    def iter_live(self) -> Iterator[DeliveryQueueItem]:
        with self._lock:
            entries = self._space.scan((_PRIMARY,))
        for _, value in entries:
            if isinstance(value, DeliveryQueueItem):
                yield value

    def claim(self, item_id: str, expected_attempt: int, *, now: datetime, lease: timedelta) -> bool:
        with self._lock:
            stored = self._stored(item_id)
            if stored is None or stored.attempt != expected_attempt:
                return False
            if claim_is_held(stored, attempt=expected_attempt, now=now, lease=lease):
                return False
            claimed = replace(stored, claimed_attempt=expected_attempt, claimed_at=coerce_utc(now))
            self._space.commit(sets={QueueIndexes.primary(item_id): claimed})
            return True

    def count_history(self, outcome: HistoryOutcome) -> int:
        with self._lock:
            return len(self._space.scan((_HISTORY, outcome)))

    def list_history(self, outcome: HistoryOutcome) -> list[DeliveryHistoryRecord]:
        with self._lock:
            entries = self._space.scan((_HISTORY, outcome))
        return [value for _, value in entries if isinstance(value, DeliveryHistoryRecord)]

    def prune_history(self, older_than: datetime) -> int:
        cutoff = coerce_utc(older_than)
        with self._lock:
            stale = [
                key
                for key, value in self._space.scan((_HISTORY,))
                if isinstance(value, DeliveryHistoryRecord) and value.recorded_at < cutoff
            ]
            self._space.commit(deletes=stale)
        return len(stale)
