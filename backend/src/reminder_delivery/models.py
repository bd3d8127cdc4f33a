from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .delivery_queue import QueueStats
from .delivery_service import DeliveryStatusInfo, ProcessSummary, ScheduledDelivery
from .delivery_store import DeliveryQueueItem
from .escalation import MAX_MESSAGE_LENGTH, EscalationScanSummary
from .health import HealthReport, HealthStatusName
from .reminders import EscalationRule, ReminderRecord, ReminderStatus
from .time_resolver import TimezoneInfo

EscalationTriggerName = Literal["timeout", "declined", "no_response"]
ResponseName = Literal["acknowledged", "declined"]
LiveDeliveryStatusName = Literal["scheduled", "pending", "retrying"]


def _strip_required(value: str, field_name: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be blank")
    return normalized


class ScheduleDeliveryRequest(BaseModel):
    reminder_id: str = Field(min_length=1, max_length=128)
    recipient_id: str = Field(min_length=1, max_length=128)
    message: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)
    scheduled_time: str = Field(min_length=1, max_length=32, description="Recipient wall clock, YYYY-MM-DDTHH:MM")
    timezone: str = Field(min_length=1, max_length=64)
    max_attempts: int | None = Field(default=None, ge=1, le=20)

    @field_validator("reminder_id", "recipient_id", "timezone")
    @classmethod
    def _normalize_identifier(cls, value: str, info) -> str:
        return _strip_required(value, info.field_name)


class UpdateDeliveryRequest(BaseModel):
    scheduled_time: str | None = Field(default=None, min_length=1, max_length=32)
    timezone: str | None = Field(default=None, min_length=1, max_length=64)
    recipient_id: str | None = Field(default=None, min_length=1, max_length=128)
    message: str | None = Field(default=None, min_length=1, max_length=MAX_MESSAGE_LENGTH)
    max_attempts: int | None = Field(default=None, ge=1, le=20)

    @model_validator(mode="after")
    def _require_change(self) -> UpdateDeliveryRequest:
        if all(
            value is None
            for value in (self.scheduled_time, self.timezone, self.recipient_id, self.message, self.max_attempts)
        ):
            raise ValueError("at least one field must be provided")
        return self


class ScheduledDeliveryResponse(BaseModel):
    item_id: str
    reminder_id: str
    recipient_id: str
    instant: datetime
    display_time: str
    timezone: str

    @classmethod
    def from_result(cls, value: ScheduledDelivery) -> ScheduledDeliveryResponse:
        return cls(
            item_id=value.item_id,
            reminder_id=value.reminder_id,
            recipient_id=value.recipient_id,
            instant=value.instant,
            display_time=value.display_time,
            timezone=value.timezone,
        )


class QueueItemResponse(BaseModel):
    item_id: str
    reminder_id: str
    recipient_id: str
    due_instant: datetime
    recipient_timezone: str
    recipient_display_time: str
    message_content: str
    attempt: int
    max_attempts: int
    next_retry_instant: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_item(cls, item: DeliveryQueueItem) -> QueueItemResponse:
        return cls(
            item_id=item.item_id,
            reminder_id=item.reminder_id,
            recipient_id=item.recipient_id,
            due_instant=item.due_instant,
            recipient_timezone=item.recipient_timezone,
            recipient_display_time=item.recipient_display_time,
            message_content=item.message_content,
            attempt=item.attempt,
            max_attempts=item.max_attempts,
            next_retry_instant=item.next_retry_instant,
            last_error=item.last_error,
            created_at=item.created_at,
            updated_at=item.updated_at,
        )


class RecipientDeliveriesResponse(BaseModel):
    recipient_id: str
    items: list[QueueItemResponse]


class DeliveryStatusResponse(BaseModel):
    reminder_id: str
    status: LiveDeliveryStatusName
    item: QueueItemResponse

    @classmethod
    def from_result(cls, value: DeliveryStatusInfo) -> DeliveryStatusResponse:
        return cls(reminder_id=value.reminder_id, status=value.status, item=QueueItemResponse.from_item(value.item))


class CancelDeliveryResponse(BaseModel):
    reminder_id: str
    cancelled: bool = True


class ProcessSummaryResponse(BaseModel):
    processed: int
    successful: int
    failed: int
    skipped: int

    @classmethod
    def from_result(cls, value: ProcessSummary) -> ProcessSummaryResponse:
        return cls(
            processed=value.processed,
            successful=value.successful,
            failed=value.failed,
            skipped=value.skipped,
        )


class QueueStatsResponse(BaseModel):
    pending: int
    scheduled: int
    delivered: int
    failed: int
    cancelled: int
    retrying: int

    @classmethod
    def from_result(cls, value: QueueStats) -> QueueStatsResponse:
        return cls(
            pending=value.pending,
            scheduled=value.scheduled,
            delivered=value.delivered,
            failed=value.failed,
            cancelled=value.cancelled,
            retrying=value.retrying,
        )


class HealthResponse(BaseModel):
    status: HealthStatusName
    store_reachable: bool
    backlog: int
    failure_rate: float
    issues: list[str]
    checked_at: datetime
    stats: QueueStatsResponse | None = None

    @classmethod
    def from_report(cls, report: HealthReport) -> HealthResponse:
        return cls(
            status=report.status,
            store_reachable=report.store_reachable,
            backlog=report.backlog,
            failure_rate=report.failure_rate,
            issues=list(report.issues),
            checked_at=report.checked_at,
            stats=QueueStatsResponse.from_result(report.stats) if report.stats is not None else None,
        )


class EscalationRulePayload(BaseModel):
    secondary_recipient_id: str = Field(min_length=1, max_length=128)
    timeout_minutes: int = Field(ge=1, le=10080)
    triggers: list[EscalationTriggerName] = Field(default_factory=lambda: ["timeout"], min_length=1)
    timeout_message: str | None = Field(default=None, max_length=MAX_MESSAGE_LENGTH)
    decline_message: str | None = Field(default=None, max_length=MAX_MESSAGE_LENGTH)

    @field_validator("triggers")
    @classmethod
    def _dedupe_triggers(cls, value: list[EscalationTriggerName]) -> list[EscalationTriggerName]:
        return sorted(set(value))  # type: ignore[return-value]

    def to_rule(self) -> EscalationRule:
        return EscalationRule(
            secondary_recipient_id=self.secondary_recipient_id.strip(),
            timeout_minutes=self.timeout_minutes,
            triggers=frozenset(self.triggers),
            timeout_message=self.timeout_message,
            decline_message=self.decline_message,
        )

    @classmethod
    def from_rule(cls, rule: EscalationRule) -> EscalationRulePayload:
        return cls(
            secondary_recipient_id=rule.secondary_recipient_id,
            timeout_minutes=rule.timeout_minutes,
            triggers=sorted(rule.triggers),  # type: ignore[arg-type]
            timeout_message=rule.timeout_message,
            decline_message=rule.decline_message,
        )


class CreateReminderRequest(BaseModel):
    reminder_id: str | None = Field(default=None, min_length=1, max_length=100)
    recipient_id: str = Field(min_length=1, max_length=128)
    message: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)
    scheduled_time: str = Field(min_length=1, max_length=32)
    timezone: str = Field(min_length=1, max_length=64)
    escalation: EscalationRulePayload | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=20)

    @model_validator(mode="after")
    def _distinct_secondary(self) -> CreateReminderRequest:
        if self.escalation is not None and (
            self.escalation.secondary_recipient_id.strip() == self.recipient_id.strip()
        ):
            raise ValueError("escalation.secondary_recipient_id must differ from recipient_id")
        return self


class ReminderResponse(BaseModel):
    reminder_id: str
    recipient_id: str
    message: str
    timezone: str
    scheduled_instant: datetime
    status: ReminderStatus
    status_changed_at: datetime
    escalation: EscalationRulePayload | None = None
    last_response: ResponseName | None = None
    escalation_error: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: ReminderRecord) -> ReminderResponse:
        return cls(
            reminder_id=record.reminder_id,
            recipient_id=record.recipient_id,
            message=record.message,
            timezone=record.timezone,
            scheduled_instant=record.scheduled_instant,
            status=record.status,
            status_changed_at=record.status_changed_at,
            escalation=EscalationRulePayload.from_rule(record.escalation_rule) if record.escalation_rule else None,
            last_response=record.last_response,
            escalation_error=record.escalation_error,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class ReminderResponseRequest(BaseModel):
    response: ResponseName


class EscalationScanResponse(BaseModel):
    checked: int
    escalated: int
    failed: int
    expired: int
    errors: int

    @classmethod
    def from_result(cls, value: EscalationScanSummary) -> EscalationScanResponse:
        return cls(
            checked=value.checked,
            escalated=value.escalated,
            failed=value.failed,
            expired=value.expired,
            errors=value.errors,
        )


class TimezoneItem(BaseModel):
    identifier: str
    display_name: str
    current_offset: str
    current_time: datetime

    @classmethod
    def from_info(cls, info: TimezoneInfo) -> TimezoneItem:
        return cls(
            identifier=info.identifier,
            display_name=info.display_name,
            current_offset=info.current_offset,
            current_time=info.current_time,
        )


class TimezoneListResponse(BaseModel):
    items: list[TimezoneItem]
