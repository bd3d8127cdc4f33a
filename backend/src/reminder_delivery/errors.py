from __future__ import annotations

from typing import Literal

ValidationReason = Literal[
    "invalid_timezone",
    "invalid_datetime",
    "past_time",
    "nonexistent_time",
    "invalid_request",
]


class DeliveryError(Exception):
    """Base class for every failure the delivery core reports to its callers."""

    code = "delivery_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationFailure(DeliveryError):
    """Bad input time, timezone or request shape. Never retried."""

    code = "validation_failed"

    def __init__(self, reason: ValidationReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class DeliveryConflictError(DeliveryError):
    """A live queue item already exists for the reminder."""

    code = "conflict"

    def __init__(self, reminder_id: str, existing_item_id: str | None = None) -> None:
        super().__init__(f"live delivery already exists for reminder: {reminder_id}")
        self.reminder_id = reminder_id
        self.existing_item_id = existing_item_id


class DeliveryNotFoundError(DeliveryError, KeyError):
    """Raised when an operation references an unknown queue item or reminder."""

    code = "not_found"

    def __str__(self) -> str:
        return self.message


class TransportFailure(DeliveryError):
    code = "transport_failed"

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class StoreFailure(DeliveryError):
    """Underlying persistence error; the periodic driver re-polls on its next cycle."""

    code = "store_failed"
