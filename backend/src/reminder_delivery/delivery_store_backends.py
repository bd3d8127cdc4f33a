from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator

from sqlalchemy import BigInteger, DateTime, Integer, String, Text, and_, create_engine, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .clock import coerce_utc, from_epoch_ms, now_utc, to_epoch_ms
from .delivery_store import (
    DeliveryHistoryRecord,
    DeliveryQueueItem,
    DeliveryStore,
    HistoryOutcome,
    InMemoryDeliveryStore,
)
from .errors import DeliveryConflictError, DeliveryError, StoreFailure

SCAN_PAGE_SIZE = 100


class DeliveryStoreBase(DeclarativeBase):
    pass


class _DeliveryItemRow(DeliveryStoreBase):
    __tablename__ = "delivery_queue_items"

    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reminder_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    recipient_id: Mapped[str] = mapped_column(String(128), nullable=False)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    recipient_timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_display_time: Mapped[str] = mapped_column(String(128), nullable=False)
    message_content: Mapped[str] = mapped_column(Text, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed_attempt: Mapped[int | None] = mapped_column(Integer, nullable=True)
    claimed_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _DueIndexRow(DeliveryStoreBase):
    __tablename__ = "delivery_queue_by_instant"

    due_at_ms: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)


class _RecipientIndexRow(DeliveryStoreBase):
    __tablename__ = "delivery_queue_by_recipient"

    recipient_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)


class _ReminderIndexRow(DeliveryStoreBase):
    __tablename__ = "delivery_queue_by_reminder"

    reminder_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)


class _HistoryRow(DeliveryStoreBase):
    __tablename__ = "delivery_history"

    outcome: Mapped[str] = mapped_column(String(16), primary_key=True)
    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    reminder_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    recorded_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)


def _optional_iso(value: datetime | None) -> str | None:
    return coerce_utc(value).isoformat() if value is not None else None


def _optional_datetime(value: object) -> datetime | None:
    return coerce_utc(datetime.fromisoformat(str(value))) if value else None


def item_to_payload(item: DeliveryQueueItem) -> str:
    return json.dumps(
        {
            "item_id": item.item_id,
            "reminder_id": item.reminder_id,
            "recipient_id": item.recipient_id,
            "due_instant": coerce_utc(item.due_instant).isoformat(),
            "recipient_timezone": item.recipient_timezone,
            "recipient_display_time": item.recipient_display_time,
            "message_content": item.message_content,
            "attempt": item.attempt,
            "max_attempts": item.max_attempts,
            "next_retry_instant": _optional_iso(item.next_retry_instant),
            "last_error": item.last_error,
            "created_at": coerce_utc(item.created_at).isoformat(),
            "updated_at": coerce_utc(item.updated_at).isoformat(),
        },
        sort_keys=True,
        separators=(",", ":"),
    )


def item_from_payload(payload_json: str) -> DeliveryQueueItem:
    payload = json.loads(payload_json)
    return DeliveryQueueItem(
        item_id=str(payload["item_id"]),
        reminder_id=str(payload["reminder_id"]),
        recipient_id=str(payload["recipient_id"]),
        due_instant=coerce_utc(datetime.fromisoformat(payload["due_instant"])),
        recipient_timezone=str(payload["recipient_timezone"]),
        recipient_display_time=str(payload["recipient_display_time"]),
        message_content=str(payload["message_content"]),
        attempt=int(payload["attempt"]),
        max_attempts=int(payload["max_attempts"]),
        next_retry_instant=_optional_datetime(payload.get("next_retry_instant")),
        last_error=payload.get("last_error"),
        created_at=coerce_utc(datetime.fromisoformat(payload["created_at"])),
        updated_at=coerce_utc(datetime.fromisoformat(payload["updated_at"])),
    )


def _row_to_item(row: _DeliveryItemRow) -> DeliveryQueueItem:
    return DeliveryQueueItem(
        item_id=row.item_id,
        reminder_id=row.reminder_id,
        recipient_id=row.recipient_id,
        due_instant=coerce_utc(row.due_at),
        recipient_timezone=row.recipient_timezone,
        recipient_display_time=row.recipient_display_time,
        message_content=row.message_content,
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        next_retry_instant=coerce_utc(row.next_retry_at) if row.next_retry_at is not None else None,
        last_error=row.last_error,
        claimed_attempt=row.claimed_attempt,
        claimed_at=from_epoch_ms(row.claimed_at_ms) if row.claimed_at_ms is not None else None,
        created_at=coerce_utc(row.created_at),
        updated_at=coerce_utc(row.updated_at),
    )


def _item_values(item: DeliveryQueueItem) -> dict[str, object]:
    return {
        "reminder_id": item.reminder_id,
        "recipient_id": item.recipient_id,
        "due_at": coerce_utc(item.due_instant),
        "recipient_timezone": item.recipient_timezone,
        "recipient_display_time": item.recipient_display_time,
        "message_content": item.message_content,
        "attempt": item.attempt,
        "max_attempts": item.max_attempts,
        "next_retry_at": coerce_utc(item.next_retry_instant) if item.next_retry_instant is not None else None,
        "last_error": item.last_error,
        "claimed_attempt": item.claimed_attempt,
        "claimed_at_ms": to_epoch_ms(item.claimed_at) if item.claimed_at is not None else None,
        "created_at": coerce_utc(item.created_at),
        "updated_at": coerce_utc(item.updated_at),
    }


def _apply_item(row: _DeliveryItemRow, item: DeliveryQueueItem) -> None:
    for name, value in _item_values(item).items():
        setattr(row, name, value)


class SqlAlchemyDeliveryStore:
    """Relational delivery store: one table per key family, one transaction per commit."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for DELIVERY_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            DeliveryStoreBase.metadata.create_all(self._engine)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                with session.begin():
                    yield session
        except DeliveryError:
            raise
        except SQLAlchemyError as exc:
            raise StoreFailure(f"delivery store operation failed: {exc}") from exc

    def reset(self) -> None:
        with self._transaction() as session:
            session.execute(delete(_HistoryRow))
            session.execute(delete(_ReminderIndexRow))
            session.execute(delete(_RecipientIndexRow))
            session.execute(delete(_DueIndexRow))
            session.execute(delete(_DeliveryItemRow))

    def put(self, item: DeliveryQueueItem) -> None:
        try:
            with self._transaction() as session:
                existing = session.get(_ReminderIndexRow, item.reminder_id)
                if existing is not None:
                    raise DeliveryConflictError(item.reminder_id, existing.item_id)
                row = _DeliveryItemRow(item_id=item.item_id)
                _apply_item(row, item)
                session.add(row)
                session.add(_DueIndexRow(due_at_ms=to_epoch_ms(item.indexed_instant), item_id=item.item_id))
                session.add(_RecipientIndexRow(recipient_id=item.recipient_id, item_id=item.item_id))
                session.add(_ReminderIndexRow(reminder_id=item.reminder_id, item_id=item.item_id))
        except StoreFailure as exc:
            # A concurrent writer won the reverse-index primary key.
            if isinstance(exc.__cause__, IntegrityError):
                raise DeliveryConflictError(item.reminder_id) from exc.__cause__
            raise

    def _delete_indexes(self, session: Session, stored: _DeliveryItemRow) -> None:
        session.execute(delete(_DueIndexRow).where(_DueIndexRow.item_id == stored.item_id))
        session.execute(
            delete(_RecipientIndexRow)
            .where(_RecipientIndexRow.recipient_id == stored.recipient_id)
            .where(_RecipientIndexRow.item_id == stored.item_id)
        )
        session.execute(
            delete(_ReminderIndexRow)
            .where(_ReminderIndexRow.reminder_id == stored.reminder_id)
            .where(_ReminderIndexRow.item_id == stored.item_id)
        )

    def remove(
        self,
        item: DeliveryQueueItem,
        *,
        outcome: HistoryOutcome | None = None,
        recorded_at: datetime | None = None,
        expected_attempt: int | None = None,
    ) -> bool:
        with self._transaction() as session:
            stored = session.get(_DeliveryItemRow, item.item_id, with_for_update=True)
            if stored is None:
                return False
            query = delete(_DeliveryItemRow).where(_DeliveryItemRow.item_id == item.item_id)
            if expected_attempt is not None:
                query = query.where(_DeliveryItemRow.attempt == expected_attempt)
            if session.execute(query.execution_options(synchronize_session=False)).rowcount != 1:
                return False
            self._delete_indexes(session, stored)
            session.expunge(stored)
            if outcome is not None:
                moment = coerce_utc(recorded_at or now_utc())
                session.merge(
                    _HistoryRow(
                        outcome=outcome,
                        item_id=item.item_id,
                        reminder_id=item.reminder_id,
                        payload_json=item_to_payload(item),
                        recorded_at=moment,
                        recorded_at_ms=to_epoch_ms(moment),
                    )
                )
            return True

    def move_due_index(
        self,
        item: DeliveryQueueItem,
        old_instant: datetime,
        new_instant: datetime,
        *,
        expected_attempt: int | None = None,
    ) -> bool:
        with self._transaction() as session:
            stored = session.get(_DeliveryItemRow, item.item_id, with_for_update=True)
            if stored is None:
                return False
            previous_ms = to_epoch_ms(_row_to_item(stored).indexed_instant)
            query = update(_DeliveryItemRow).where(_DeliveryItemRow.item_id == item.item_id)
            if expected_attempt is not None:
                query = query.where(_DeliveryItemRow.attempt == expected_attempt)
            result = session.execute(
                query.values(**_item_values(item)).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            session.execute(
                delete(_DueIndexRow)
                .where(_DueIndexRow.item_id == item.item_id)
                .where(_DueIndexRow.due_at_ms.in_(sorted({to_epoch_ms(old_instant), previous_ms})))
            )
            session.add(_DueIndexRow(due_at_ms=to_epoch_ms(new_instant), item_id=item.item_id))
            return True

    def scan_due(self, before_instant: datetime) -> Iterator[str]:
        cutoff = to_epoch_ms(before_instant)
        cursor: tuple[int, str] | None = None
        while True:
            query = select(_DueIndexRow.due_at_ms, _DueIndexRow.item_id).where(_DueIndexRow.due_at_ms <= cutoff)
            if cursor is not None:
                query = query.where(
                    or_(
                        _DueIndexRow.due_at_ms > cursor[0],
                        and_(_DueIndexRow.due_at_ms == cursor[0], _DueIndexRow.item_id > cursor[1]),
                    )
                )
            query = query.order_by(_DueIndexRow.due_at_ms.asc(), _DueIndexRow.item_id.asc()).limit(SCAN_PAGE_SIZE)
            with self._transaction() as session:
                page = [(row[0], row[1]) for row in session.execute(query).all()]
            if not page:
                return
            for due_at_ms, item_id in page:
                cursor = (due_at_ms, item_id)
                yield item_id
            if len(page) < SCAN_PAGE_SIZE:
                return

    def get(self, item_id: str) -> DeliveryQueueItem | None:
        with self._transaction() as session:
            row = session.get(_DeliveryItemRow, item_id)
            return _row_to_item(row) if row is not None else None

    def find_by_reminder(self, reminder_id: str) -> DeliveryQueueItem | None:
        with self._transaction() as session:
            index_row = session.get(_ReminderIndexRow, reminder_id)
            if index_row is None:
                return None
            row = session.get(_DeliveryItemRow, index_row.item_id)
            return _row_to_item(row) if row is not None else None

    def list_by_recipient(self, recipient_id: str) -> list[DeliveryQueueItem]:
        with self._transaction() as session:
            rows = session.execute(
                select(_DeliveryItemRow)
                .join(_RecipientIndexRow, _RecipientIndexRow.item_id == _DeliveryItemRow.item_id)
                .where(_RecipientIndexRow.recipient_id == recipient_id)
                .order_by(_DeliveryItemRow.item_id.asc())
            ).scalars()
            return [_row_to_item(row) for row in rows]

    def iter_live(self) -> Iterator[DeliveryQueueItem]:
        with self._transaction() as session:
            rows = session.execute(select(_DeliveryItemRow).order_by(_DeliveryItemRow.item_id.asc())).scalars()
            items = [_row_to_item(row) for row in rows]
        yield from items

    def claim(self, item_id: str, expected_attempt: int, *, now: datetime, lease: timedelta) -> bool:
        now_ms = to_epoch_ms(now)
        expired_before_ms = to_epoch_ms(coerce_utc(now) - lease)
        with self._transaction() as session:
            result = session.execute(
                update(_DeliveryItemRow)
                .where(_DeliveryItemRow.item_id == item_id)
                .where(_DeliveryItemRow.attempt == expected_attempt)
                .where(
                    or_(
                        _DeliveryItemRow.claimed_attempt.is_(None),
                        _DeliveryItemRow.claimed_attempt != expected_attempt,
                        _DeliveryItemRow.claimed_at_ms.is_(None),
                        _DeliveryItemRow.claimed_at_ms <= expired_before_ms,
                    )
                )
                .values(claimed_attempt=expected_attempt, claimed_at_ms=now_ms)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def count_history(self, outcome: HistoryOutcome) -> int:
        with self._transaction() as session:
            return int(
                session.execute(
                    select(func.count()).select_from(_HistoryRow).where(_HistoryRow.outcome == outcome)
                ).scalar_one()
            )

    def list_history(self, outcome: HistoryOutcome) -> list[DeliveryHistoryRecord]:
        with self._transaction() as session:
            rows = session.execute(
                select(_HistoryRow)
                .where(_HistoryRow.outcome == outcome)
                .order_by(_HistoryRow.recorded_at_ms.asc(), _HistoryRow.item_id.asc())
            ).scalars()
            return [
                DeliveryHistoryRecord(
                    item=item_from_payload(row.payload_json),
                    outcome=outcome,
                    recorded_at=from_epoch_ms(row.recorded_at_ms),
                )
                for row in rows
            ]

    def prune_history(self, older_than: datetime) -> int:
        with self._transaction() as session:
            result = session.execute(
                delete(_HistoryRow)
                .where(_HistoryRow.recorded_at_ms < to_epoch_ms(older_than))
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)


def create_delivery_store(*, backend: str, database_url: str) -> DeliveryStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyDeliveryStore(database_url)
    if normalized == "inmemory":
        return InMemoryDeliveryStore()
    raise RuntimeError(f"unsupported DELIVERY_STORE_BACKEND: {backend}")
