from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import Lock
from typing import Iterator, Literal, Protocol

from sqlalchemy import DateTime, String, Text, create_engine, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .clock import coerce_utc
from .errors import DeliveryConflictError, DeliveryError, DeliveryNotFoundError, StoreFailure

ReminderStatus = Literal[
    "pending",
    "sent",
    "acknowledged",
    "declined",
    "escalated",
    "escalated_acknowledged",
    "escalated_declined",
    "failed",
    "cancelled",
    "expired",
]
EscalationTrigger = Literal["timeout", "declined", "no_response"]
ResponseType = Literal["acknowledged", "declined"]

TERMINAL_STATUSES: frozenset[str] = frozenset(
    {
        "acknowledged",
        "declined",
        "escalated_acknowledged",
        "escalated_declined",
        "failed",
        "cancelled",
        "expired",
    }
)
CANCELLABLE_STATUSES: frozenset[str] = frozenset({"pending", "sent", "escalated"})
ESCALATION_TRIGGERS: frozenset[str] = frozenset({"timeout", "declined", "no_response"})


@dataclass(frozen=True)
class EscalationRule:
    secondary_recipient_id: str
    timeout_minutes: int
    triggers: frozenset[str] = field(default_factory=lambda: frozenset({"timeout"}))
    timeout_message: str | None = None
    decline_message: str | None = None

    def __post_init__(self) -> None:
        if self.timeout_minutes <= 0:
            raise ValueError("timeout_minutes must be positive")
        unknown = set(self.triggers) - ESCALATION_TRIGGERS
        if unknown:
            raise ValueError(f"unknown escalation triggers: {', '.join(sorted(unknown))}")

    @property
    def escalates_on_timeout(self) -> bool:
        return "timeout" in self.triggers or "no_response" in self.triggers

    @property
    def escalates_on_decline(self) -> bool:
        return "declined" in self.triggers


@dataclass(frozen=True)
class ReminderRecord:
    reminder_id: str
    recipient_id: str
    message: str
    timezone: str
    scheduled_instant: datetime
    status: ReminderStatus
    status_changed_at: datetime
    created_at: datetime
    updated_at: datetime
    escalation_rule: EscalationRule | None = None
    last_response: ResponseType | None = None
    escalation_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ReminderRepository(Protocol):
    def reset(self) -> None: ...

    def create(self, record: ReminderRecord) -> ReminderRecord: ...

    def get(self, reminder_id: str) -> ReminderRecord | None: ...

    def list_non_terminal(self) -> list[ReminderRecord]: ...

    def transition(
        self,
        reminder_id: str,
        *,
        expected: ReminderStatus,
        new_status: ReminderStatus,
        at: datetime,
        response: ResponseType | None = None,
        error: str | None = None,
    ) -> ReminderRecord | None: ...

    def set_escalation_error(self, reminder_id: str, error: str | None, *, at: datetime) -> None: ...


class InMemoryReminderRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._records: dict[str, ReminderRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    def create(self, record: ReminderRecord) -> ReminderRecord:
        with self._lock:
            if record.reminder_id in self._records:
                raise DeliveryConflictError(record.reminder_id)
            self._records[record.reminder_id] = record
            return record

    def get(self, reminder_id: str) -> ReminderRecord | None:
        with self._lock:
            return self._records.get(reminder_id)

    def list_non_terminal(self) -> list[ReminderRecord]:
        with self._lock:
            records = [record for record in self._records.values() if not record.is_terminal]
        return sorted(records, key=lambda record: (record.status_changed_at, record.reminder_id))

    def transition(
        self,
        reminder_id: str,
        *,
        expected: ReminderStatus,
        new_status: ReminderStatus,
        at: datetime,
        response: ResponseType | None = None,
        error: str | None = None,
    ) -> ReminderRecord | None:
        with self._lock:
            current = self._records.get(reminder_id)
            if current is None:
                raise DeliveryNotFoundError(f"reminder not found: {reminder_id}")
            if current.status != expected:
                return None
            moment = coerce_utc(at)
            updated = replace(
                current,
                status=new_status,
                status_changed_at=moment,
                updated_at=moment,
                last_response=response if response is not None else current.last_response,
                escalation_error=error,
            )
            self._records[reminder_id] = updated
            return updated

    def set_escalation_error(self, reminder_id: str, error: str | None, *, at: datetime) -> None:
        with self._lock:
            current = self._records.get(reminder_id)
            if current is None:
                raise DeliveryNotFoundError(f"reminder not found: {reminder_id}")
            self._records[reminder_id] = replace(current, escalation_error=error, updated_at=coerce_utc(at))


class ReminderStoreBase(DeclarativeBase):
    pass


class _ReminderRow(ReminderStoreBase):
    __tablename__ = "delivery_reminders"

    reminder_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status_changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    escalation_rule_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_response: Mapped[str | None] = mapped_column(String(16), nullable=True)
    escalation_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def rule_to_json(rule: EscalationRule | None) -> str | None:
    if rule is None:
        return None
    return json.dumps(
        {
            "secondary_recipient_id": rule.secondary_recipient_id,
            "timeout_minutes": rule.timeout_minutes,
            "triggers": sorted(rule.triggers),
            "timeout_message": rule.timeout_message,
            "decline_message": rule.decline_message,
        },
        sort_keys=True,
        separators=(",", ":"),
    )


def rule_from_json(raw: str | None) -> EscalationRule | None:
    if not raw:
        return None
    payload = json.loads(raw)
    return EscalationRule(
        secondary_recipient_id=str(payload["secondary_recipient_id"]),
        timeout_minutes=int(payload["timeout_minutes"]),
        triggers=frozenset(payload.get("triggers") or ["timeout"]),
        timeout_message=payload.get("timeout_message"),
        decline_message=payload.get("decline_message"),
    )


def _row_to_record(row: _ReminderRow) -> ReminderRecord:
    return ReminderRecord(
        reminder_id=row.reminder_id,
        recipient_id=row.recipient_id,
        message=row.message,
        timezone=row.timezone,
        scheduled_instant=coerce_utc(row.scheduled_at),
        status=row.status,  # type: ignore[arg-type]
        status_changed_at=coerce_utc(row.status_changed_at),
        escalation_rule=rule_from_json(row.escalation_rule_json),
        last_response=row.last_response,  # type: ignore[arg-type]
        escalation_error=row.escalation_error,
        created_at=coerce_utc(row.created_at),
        updated_at=coerce_utc(row.updated_at),
    )


class SqlAlchemyReminderRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderStoreBase.metadata.create_all(self._engine)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                with session.begin():
                    yield session
        except DeliveryError:
            raise
        except SQLAlchemyError as exc:
            raise StoreFailure(f"reminder store operation failed: {exc}") from exc

    def reset(self) -> None:
        with self._transaction() as session:
            session.execute(delete(_ReminderRow))

    def create(self, record: ReminderRecord) -> ReminderRecord:
        try:
            with self._transaction() as session:
                if session.get(_ReminderRow, record.reminder_id) is not None:
                    raise DeliveryConflictError(record.reminder_id)
                session.add(
                    _ReminderRow(
                        reminder_id=record.reminder_id,
                        recipient_id=record.recipient_id,
                        message=record.message,
                        timezone=record.timezone,
                        scheduled_at=coerce_utc(record.scheduled_instant),
                        status=record.status,
                        status_changed_at=coerce_utc(record.status_changed_at),
                        escalation_rule_json=rule_to_json(record.escalation_rule),
                        last_response=record.last_response,
                        escalation_error=record.escalation_error,
                        created_at=coerce_utc(record.created_at),
                        updated_at=coerce_utc(record.updated_at),
                    )
                )
        except StoreFailure as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise DeliveryConflictError(record.reminder_id) from exc.__cause__
            raise
        return record

    def get(self, reminder_id: str) -> ReminderRecord | None:
        with self._transaction() as session:
            row = session.get(_ReminderRow, reminder_id)
            return _row_to_record(row) if row is not None else None

    def list_non_terminal(self) -> list[ReminderRecord]:
        with self._transaction() as session:
            rows = session.execute(
                select(_ReminderRow)
                .where(_ReminderRow.status.not_in(sorted(TERMINAL_STATUSES)))
                .order_by(_ReminderRow.status_changed_at.asc(), _ReminderRow.reminder_id.asc())
            ).scalars()
            return [_row_to_record(row) for row in rows]

    def transition(
        self,
        reminder_id: str,
        *,
        expected: ReminderStatus,
        new_status: ReminderStatus,
        at: datetime,
        response: ResponseType | None = None,
        error: str | None = None,
    ) -> ReminderRecord | None:
        moment = coerce_utc(at)
        values: dict[str, object] = {
            "status": new_status,
            "status_changed_at": moment,
            "updated_at": moment,
            "escalation_error": error,
        }
        if response is not None:
            values["last_response"] = response
        with self._transaction() as session:
            result = session.execute(
                update(_ReminderRow)
                .where(_ReminderRow.reminder_id == reminder_id)
                .where(_ReminderRow.status == expected)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                if session.get(_ReminderRow, reminder_id) is None:
                    raise DeliveryNotFoundError(f"reminder not found: {reminder_id}")
                return None
            row = session.get(_ReminderRow, reminder_id, populate_existing=True)
            return _row_to_record(row) if row is not None else None

    def set_escalation_error(self, reminder_id: str, error: str | None, *, at: datetime) -> None:
        with self._transaction() as session:
            row = session.get(_ReminderRow, reminder_id)
            if row is None:
                raise DeliveryNotFoundError(f"reminder not found: {reminder_id}")
            row.escalation_error = error
            row.updated_at = coerce_utc(at)


def create_reminder_repository(*, backend: str, database_url: str) -> ReminderRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderRepository(database_url)
    if normalized == "inmemory":
        return InMemoryReminderRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
