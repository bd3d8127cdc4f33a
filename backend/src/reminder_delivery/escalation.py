from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Literal, TypeVar
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from .clock import Clock, coerce_utc, now_utc
from .delivery_service import DeliveryRequest, DeliveryService
from .errors import DeliveryConflictError, DeliveryError, DeliveryNotFoundError, StoreFailure, ValidationFailure
from .reminders import (
    CANCELLABLE_STATUSES,
    EscalationRule,
    ReminderRecord,
    ReminderRepository,
    ReminderStatus,
    ResponseType,
)
from .results import Failure, Ok, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")

EscalationKind = Literal["timeout", "decline"]

MAX_MESSAGE_LENGTH = 2000
ESCALATION_REMINDER_SUFFIX = ":escalation"

DEFAULT_TIMEOUT_MESSAGE = """Escalation: reminder timeout

A reminder has not been acknowledged within the configured timeout period.

Original reminder content:
{content}

Target user: {recipient}
Scheduled time: {scheduled_time}
Timeout period: {timeout_minutes} minutes

Please follow up with the user regarding this reminder."""

DEFAULT_DECLINE_MESSAGE = """Escalation: reminder declined

A reminder has been explicitly declined by the user.

Original reminder content:
{content}

Target user: {recipient}
Scheduled time: {scheduled_time}

Please follow up with the user to understand why they declined this reminder."""


@dataclass(frozen=True)
class ReminderRequest:
    recipient_id: str
    message: str
    scheduled_time: str
    timezone: str
    escalation_rule: EscalationRule | None = None
    reminder_id: str | None = None
    max_attempts: int | None = None


@dataclass(frozen=True)
class EscalationScanSummary:
    checked: int = 0
    escalated: int = 0
    failed: int = 0
    expired: int = 0
    errors: int = 0


def escalation_reminder_id(reminder_id: str) -> str:
    return f"{reminder_id}{ESCALATION_REMINDER_SUFFIX}"


def format_escalation_message(template: str, record: ReminderRecord, scheduled_time: str) -> str:
    rule = record.escalation_rule
    return (
        template.replace("{content}", record.message)
        .replace("{recipient}", record.recipient_id)
        .replace("{scheduled_time}", scheduled_time)
        .replace("{timeout_minutes}", str(rule.timeout_minutes if rule is not None else 0))
    )


def select_escalation_template(rule: EscalationRule, kind: EscalationKind) -> str:
    custom = rule.timeout_message if kind == "timeout" else rule.decline_message
    if custom and custom.strip():
        return custom
    return DEFAULT_TIMEOUT_MESSAGE if kind == "timeout" else DEFAULT_DECLINE_MESSAGE


class EscalationEngine:
    """Drives reminders through pending, sent, escalated and their terminal states.

    Status changes are compare-and-set against the reminder repository, so any
    number of scanners may run side by side.
    """

    def __init__(
        self,
        *,
        reminders: ReminderRepository,
        service: DeliveryService,
        clock: Clock = now_utc,
    ) -> None:
        self._reminders = reminders
        self._service = service
        self._clock = clock

    def _now(self) -> datetime:
        return coerce_utc(self._clock())

    def _run(self, operation: str, action: Callable[[], T]) -> Result[T]:
        try:
            return Ok(action())
        except ValidationFailure as exc:
            logger.warning("%s rejected (%s): %s", operation, exc.reason, exc.message)
            return Failure(exc)
        except DeliveryError as exc:
            return Failure(exc)
        except SQLAlchemyError as exc:
            logger.error("%s failed: %s", operation, exc)
            return Failure(StoreFailure(f"{operation} failed: {exc}"))

    def _require(self, reminder_id: str) -> ReminderRecord:
        record = self._reminders.get(reminder_id)
        if record is None:
            raise DeliveryNotFoundError(f"reminder not found: {reminder_id}")
        return record

    def _create(self, request: ReminderRequest) -> ReminderRecord:
        if len(request.message) > MAX_MESSAGE_LENGTH:
            raise ValidationFailure(
                "invalid_request",
                f"message exceeds {MAX_MESSAGE_LENGTH} characters ({len(request.message)})",
            )
        rule = request.escalation_rule
        if rule is not None:
            for custom in (rule.timeout_message, rule.decline_message):
                if custom and len(custom) > MAX_MESSAGE_LENGTH:
                    raise ValidationFailure(
                        "invalid_request",
                        f"escalation message exceeds {MAX_MESSAGE_LENGTH} characters",
                    )
            if rule.secondary_recipient_id.strip() == request.recipient_id.strip():
                raise ValidationFailure("invalid_request", "secondary recipient must differ from the recipient")

        reminder_id = request.reminder_id or str(uuid4())
        if self._reminders.get(reminder_id) is not None:
            raise DeliveryConflictError(reminder_id)

        scheduled = self._service.schedule_delivery(
            DeliveryRequest(
                reminder_id=reminder_id,
                recipient_id=request.recipient_id,
                message=request.message,
                timezone=request.timezone,
                scheduled_time=request.scheduled_time,
                max_attempts=request.max_attempts,
            )
        )
        if isinstance(scheduled, Failure):
            raise scheduled.error

        now = self._now()
        record = ReminderRecord(
            reminder_id=reminder_id,
            recipient_id=request.recipient_id,
            message=request.message,
            timezone=scheduled.value.timezone,
            scheduled_instant=scheduled.value.instant,
            status="pending",
            status_changed_at=now,
            created_at=now,
            updated_at=now,
            escalation_rule=rule,
        )
        try:
            self._reminders.create(record)
        except DeliveryError:
            self._service.cancel_delivery(reminder_id)
            raise
        logger.info("reminder %s created for %s at %s", reminder_id, record.recipient_id, scheduled.value.display_time)
        return record

    def create_reminder(self, request: ReminderRequest) -> Result[ReminderRecord]:
        return self._run("create_reminder", lambda: self._create(request))

    def get_reminder(self, reminder_id: str) -> Result[ReminderRecord]:
        return self._run("get_reminder", lambda: self._require(reminder_id))

    def _transition(
        self,
        record: ReminderRecord,
        new_status: ReminderStatus,
        at: datetime,
        *,
        response: ResponseType | None = None,
        error: str | None = None,
    ) -> ReminderRecord:
        updated = self._reminders.transition(
            record.reminder_id,
            expected=record.status,
            new_status=new_status,
            at=at,
            response=response,
            error=error,
        )
        if updated is None:
            raise ValidationFailure(
                "invalid_request",
                f"reminder {record.reminder_id} is no longer {record.status}",
            )
        logger.info("reminder %s %s -> %s", record.reminder_id, record.status, new_status)
        return updated

    def _mark_sent(self, reminder_id: str, at: datetime | None) -> ReminderRecord:
        record = self._require(reminder_id)
        if record.status != "pending":
            raise ValidationFailure("invalid_request", f"reminder {reminder_id} is {record.status}, not pending")
        return self._transition(record, "sent", coerce_utc(at) if at is not None else self._now())

    def mark_sent(self, reminder_id: str, at: datetime | None = None) -> Result[ReminderRecord]:
        return self._run("mark_sent", lambda: self._mark_sent(reminder_id, at))

    def _schedule_escalation(self, record: ReminderRecord, kind: EscalationKind, now: datetime) -> Result:
        rule = record.escalation_rule
        if rule is None:
            raise ValidationFailure("invalid_request", f"reminder {record.reminder_id} has no escalation rule")
        scheduled_time = self._service.resolver.describe(record.scheduled_instant, record.timezone).display_time
        message = format_escalation_message(select_escalation_template(rule, kind), record, scheduled_time)
        return self._service.schedule_delivery(
            DeliveryRequest(
                reminder_id=escalation_reminder_id(record.reminder_id),
                recipient_id=rule.secondary_recipient_id,
                message=message,
                timezone=record.timezone,
                due_instant=now,
            )
        )

    def _escalate(
        self,
        record: ReminderRecord,
        kind: EscalationKind,
        now: datetime,
        *,
        response: ResponseType | None = None,
    ) -> ReminderRecord | None:
        """Queue the secondary delivery, then claim the status change.

        Returns ``None`` when another scanner already escalated this reminder.
        Raises the scheduling error after recording it on the reminder.
        """
        scheduled = self._schedule_escalation(record, kind, now)
        if isinstance(scheduled, Failure):
            if isinstance(scheduled.error, DeliveryConflictError):
                return None
            self._reminders.set_escalation_error(record.reminder_id, scheduled.error.message, at=now)
            logger.error("escalation of reminder %s failed: %s", record.reminder_id, scheduled.error.message)
            raise scheduled.error

        updated = self._reminders.transition(
            record.reminder_id,
            expected=record.status,
            new_status="escalated",
            at=now,
            response=response,
        )
        if updated is None:
            self._service.cancel_delivery(escalation_reminder_id(record.reminder_id))
            return None
        logger.info(
            "reminder %s escalated (%s) to %s",
            record.reminder_id,
            kind,
            updated.escalation_rule.secondary_recipient_id if updated.escalation_rule else "-",
        )
        return updated

    def _record_response(self, reminder_id: str, response: str) -> ReminderRecord:
        if response not in ("acknowledged", "declined"):
            raise ValidationFailure("invalid_request", f"unsupported response: {response}")
        record = self._require(reminder_id)
        now = self._now()

        if record.status == "sent":
            if response == "acknowledged":
                return self._transition(record, "acknowledged", now, response="acknowledged")
            rule = record.escalation_rule
            if rule is not None and rule.escalates_on_decline:
                try:
                    escalated = self._escalate(record, "decline", now, response="declined")
                except DeliveryError as exc:
                    return self._transition(record, "declined", now, response="declined", error=exc.message)
                if escalated is not None:
                    return escalated
                return self._require(reminder_id)
            return self._transition(record, "declined", now, response="declined")

        if record.status == "escalated":
            if response == "acknowledged":
                return self._transition(record, "escalated_acknowledged", now, response="acknowledged")
            return self._transition(record, "escalated_declined", now, response="declined")

        raise ValidationFailure(
            "invalid_request",
            f"reminder {reminder_id} is {record.status} and cannot accept a response",
        )

    def record_response(self, reminder_id: str, response: str) -> Result[ReminderRecord]:
        return self._run("record_response", lambda: self._record_response(reminder_id, response))

    def _cancel_live(self, queue_reminder_id: str) -> None:
        try:
            self._service.queue.cancel(queue_reminder_id)
        except DeliveryNotFoundError:
            return

    def _cancel(self, reminder_id: str) -> ReminderRecord:
        record = self._require(reminder_id)
        if record.status not in CANCELLABLE_STATUSES:
            raise ValidationFailure(
                "invalid_request",
                f"reminder {reminder_id} is {record.status} and cannot be cancelled",
            )
        self._cancel_live(reminder_id)
        self._cancel_live(escalation_reminder_id(reminder_id))
        return self._transition(record, "cancelled", self._now())

    def cancel(self, reminder_id: str) -> Result[ReminderRecord]:
        return self._run("cancel", lambda: self._cancel(reminder_id))

    def _check(self, record: ReminderRecord, now: datetime) -> str | None:
        rule = record.escalation_rule
        elapsed = now - record.status_changed_at

        if record.status == "sent":
            if rule is None or not rule.escalates_on_timeout:
                return None
            if elapsed < timedelta(minutes=rule.timeout_minutes):
                return None
            return "escalated" if self._escalate(record, "timeout", now) is not None else None

        if record.status == "escalated":
            if rule is None or elapsed < timedelta(minutes=rule.timeout_minutes):
                return None
            updated = self._reminders.transition(
                record.reminder_id, expected="escalated", new_status="failed", at=now
            )
            if updated is None:
                return None
            logger.error("reminder %s failed: secondary recipient did not respond", record.reminder_id)
            return "failed"

        if record.status == "pending":
            if record.scheduled_instant > now:
                return None
            if self._service.queue.find_by_reminder(record.reminder_id) is not None:
                return None
            updated = self._reminders.transition(
                record.reminder_id, expected="pending", new_status="expired", at=now
            )
            if updated is None:
                return None
            logger.warning("reminder %s expired before it was sent", record.reminder_id)
            return "expired"

        return None

    def _scan(self, now: datetime) -> EscalationScanSummary:
        checked = escalated = failed = expired = errors = 0
        for record in self._reminders.list_non_terminal():
            checked += 1
            try:
                outcome = self._check(record, now)
            except DeliveryError:
                errors += 1
                continue
            except Exception:
                logger.exception("escalation check for reminder %s aborted", record.reminder_id)
                errors += 1
                continue
            if outcome == "escalated":
                escalated += 1
            elif outcome == "failed":
                failed += 1
            elif outcome == "expired":
                expired += 1
        summary = EscalationScanSummary(
            checked=checked, escalated=escalated, failed=failed, expired=expired, errors=errors
        )
        if escalated or failed or expired or errors:
            logger.info(
                "escalation scan checked=%d escalated=%d failed=%d expired=%d errors=%d",
                checked,
                escalated,
                failed,
                expired,
                errors,
            )
        return summary

    def scan(self, now: datetime | None = None) -> Result[EscalationScanSummary]:
        moment = coerce_utc(now) if now is not None else self._now()
        return self._run("scan", lambda: self._scan(moment))
