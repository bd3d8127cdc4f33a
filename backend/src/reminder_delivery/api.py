from __future__ import annotations

from typing import NoReturn

from fastapi import APIRouter, HTTPException, Response, status

from .config import get_settings
from .delivery_service import DeliveryRequest, DeliveryUpdate
from .errors import ValidationFailure
from .escalation import ReminderRequest
from .models import (
    CancelDeliveryResponse,
    CreateReminderRequest,
    DeliveryStatusResponse,
    EscalationScanResponse,
    HealthResponse,
    ProcessSummaryResponse,
    QueueItemResponse,
    QueueStatsResponse,
    RecipientDeliveriesResponse,
    ReminderResponse,
    ReminderResponseRequest,
    ScheduleDeliveryRequest,
    ScheduledDeliveryResponse,
    TimezoneItem,
    TimezoneListResponse,
    UpdateDeliveryRequest,
)
from .results import Failure, Ok, Result, T
from .runtime import Runtime, build_runtime

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/deliveries", tags=["deliveries"])
runtime: Runtime = build_runtime(_settings)

_STATUS_BY_CODE = {
    "validation_failed": 422,
    "conflict": status.HTTP_409_CONFLICT,
    "not_found": status.HTTP_404_NOT_FOUND,
    "store_failed": status.HTTP_503_SERVICE_UNAVAILABLE,
    "transport_failed": status.HTTP_502_BAD_GATEWAY,
}


def reset_runtime_state_for_tests() -> None:
    runtime.reset()


def _raise_failure(failure: Failure) -> NoReturn:
    detail: dict[str, str] = {"code": failure.code, "message": failure.error.message}
    if isinstance(failure.error, ValidationFailure):
        detail["reason"] = failure.error.reason
    raise HTTPException(
        status_code=_STATUS_BY_CODE.get(failure.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=detail,
    )


def _unwrap(result: Result[T]) -> T:
    if isinstance(result, Ok):
        return result.value
    _raise_failure(result)


@router.post("/schedule", response_model=ScheduledDeliveryResponse, status_code=status.HTTP_201_CREATED)
def schedule_delivery(payload: ScheduleDeliveryRequest) -> ScheduledDeliveryResponse:
    scheduled = _unwrap(
        runtime.service.schedule_delivery(
            DeliveryRequest(
                reminder_id=payload.reminder_id,
                recipient_id=payload.recipient_id,
                message=payload.message,
                timezone=payload.timezone,
                scheduled_time=payload.scheduled_time,
                max_attempts=payload.max_attempts,
            )
        )
    )
    return ScheduledDeliveryResponse.from_result(scheduled)


@router.get("/reminders/{reminder_id}", response_model=DeliveryStatusResponse)
def get_delivery_status(reminder_id: str) -> DeliveryStatusResponse:
    return DeliveryStatusResponse.from_result(_unwrap(runtime.service.get_delivery_status(reminder_id)))


@router.delete("/reminders/{reminder_id}", response_model=CancelDeliveryResponse)
def cancel_delivery(reminder_id: str) -> CancelDeliveryResponse:
    _unwrap(runtime.service.cancel_delivery(reminder_id))
    return CancelDeliveryResponse(reminder_id=reminder_id)


@router.patch("/reminders/{reminder_id}", response_model=ScheduledDeliveryResponse)
def update_delivery(reminder_id: str, payload: UpdateDeliveryRequest) -> ScheduledDeliveryResponse:
    updated = _unwrap(
        runtime.service.update_delivery(
            reminder_id,
            DeliveryUpdate(
                scheduled_time=payload.scheduled_time,
                timezone=payload.timezone,
                recipient_id=payload.recipient_id,
                message=payload.message,
                max_attempts=payload.max_attempts,
            ),
        )
    )
    return ScheduledDeliveryResponse.from_result(updated)


@router.post("/process", response_model=ProcessSummaryResponse)
def process_due_deliveries() -> ProcessSummaryResponse:
    return ProcessSummaryResponse.from_result(_unwrap(runtime.service.process_due_deliveries()))


@router.get("/stats", response_model=QueueStatsResponse)
def get_queue_stats() -> QueueStatsResponse:
    return QueueStatsResponse.from_result(_unwrap(runtime.service.get_queue_stats()))


@router.get("/health", response_model=HealthResponse)
def get_health(response: Response) -> HealthResponse:
    report = runtime.health()
    if report.status == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse.from_report(report)


@router.get("/recipients/{recipient_id}", response_model=RecipientDeliveriesResponse)
def get_user_reminders(recipient_id: str) -> RecipientDeliveriesResponse:
    items = _unwrap(runtime.service.get_user_reminders(recipient_id))
    return RecipientDeliveriesResponse(
        recipient_id=recipient_id,
        items=[QueueItemResponse.from_item(item) for item in items],
    )


@router.post("/escalation/reminders", response_model=ReminderResponse, status_code=status.HTTP_201_CREATED)
def create_reminder(payload: CreateReminderRequest) -> ReminderResponse:
    record = _unwrap(
        runtime.engine.create_reminder(
            ReminderRequest(
                reminder_id=payload.reminder_id,
                recipient_id=payload.recipient_id,
                message=payload.message,
                scheduled_time=payload.scheduled_time,
                timezone=payload.timezone,
                escalation_rule=payload.escalation.to_rule() if payload.escalation else None,
                max_attempts=payload.max_attempts,
            )
        )
    )
    return ReminderResponse.from_record(record)


@router.get("/escalation/reminders/{reminder_id}", response_model=ReminderResponse)
def get_reminder(reminder_id: str) -> ReminderResponse:
    return ReminderResponse.from_record(_unwrap(runtime.engine.get_reminder(reminder_id)))


@router.post("/escalation/reminders/{reminder_id}/responses", response_model=ReminderResponse)
def record_response(reminder_id: str, payload: ReminderResponseRequest) -> ReminderResponse:
    return ReminderResponse.from_record(_unwrap(runtime.engine.record_response(reminder_id, payload.response)))


@router.post("/escalation/reminders/{reminder_id}/cancel", response_model=ReminderResponse)
def cancel_reminder(reminder_id: str) -> ReminderResponse:
    return ReminderResponse.from_record(_unwrap(runtime.engine.cancel(reminder_id)))


@router.post("/escalation/scan", response_model=EscalationScanResponse)
def run_escalation_scan() -> EscalationScanResponse:
    return EscalationScanResponse.from_result(_unwrap(runtime.engine.scan()))


@router.get("/timezones", response_model=TimezoneListResponse)
def list_timezones() -> TimezoneListResponse:
    return TimezoneListResponse(items=[TimezoneItem.from_info(info) for info in runtime.resolver.popular_timezones()])
