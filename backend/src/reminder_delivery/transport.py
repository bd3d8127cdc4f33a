from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime
from email.message import Message
from typing import Any, Protocol

from .clock import Clock, coerce_utc, now_utc
from .rate_limiter import RateLimiter

SEND_ROUTE = "POST /v1/messages/send"


@dataclass(frozen=True)
class TransportResult:
    success: bool
    attempted_at: datetime
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    retry_after_ms: int | None = None

    @property
    def error(self) -> str:
        if self.success:
            return ""
        if self.error_code and self.error_message:
            return f"{self.error_code}: {self.error_message}"
        return self.error_message or self.error_code or "delivery failed"


class Transport(Protocol):
    def deliver(
        self,
        recipient_id: str,
        message: str,
        reminder_id: str,
        *,
        idempotency_key: str | None = None,
    ) -> TransportResult: ...


class StubTransport:
    def __init__(self, *, enabled: bool, clock: Clock = now_utc) -> None:
        self._enabled = enabled
        self._clock = clock

    def deliver(
        self,
        recipient_id: str,
        message: str,
        reminder_id: str,
        *,
        idempotency_key: str | None = None,
    ) -> TransportResult:
        attempted_at = coerce_utc(self._clock())

        if not self._enabled:
            return TransportResult(
                success=False,
                attempted_at=attempted_at,
                error_code="transport_disabled",
                error_message="Live delivery is disabled",
            )

        if "fail" in recipient_id.lower():
            return TransportResult(
                success=False,
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub transport forced failure for recipient",
            )

        suffix = idempotency_key or reminder_id
        return TransportResult(success=True, attempted_at=attempted_at, message_id=f"stub-{suffix}")


class _TransportSendError(Exception):
    """Internal error raised when a messaging HTTP request fails."""

    def __init__(self, error_code: str, message: str, *, retry_after_ms: int | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.retry_after_ms = retry_after_ms


def _header_int(headers: Message | None, name: str) -> int | None:
    if headers is None:
        return None
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(float(raw))
    except ValueError:
        return None


def _header_float(headers: Message | None, name: str) -> float | None:
    if headers is None:
        return None
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class HttpTransport:
    """Production transport that posts messages to the messaging provider over HTTP."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: int = 30,
        rate_limiter: RateLimiter | None = None,
        route: str = SEND_ROUTE,
        clock: Clock = now_utc,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds
        self._rate_limiter = rate_limiter or RateLimiter(clock=clock)
        self._route = route
        self._clock = clock

    def deliver(
        self,
        recipient_id: str,
        message: str,
        reminder_id: str,
        *,
        idempotency_key: str | None = None,
    ) -> TransportResult:
        attempted_at = coerce_utc(self._clock())

        decision = self._rate_limiter.check_rate_limit(self._route)
        if not decision.allowed:
            return TransportResult(
                success=False,
                attempted_at=attempted_at,
                error_code="rate_limited",
                error_message=f"Rate limited on {self._route}",
                retry_after_ms=decision.retry_after_ms,
            )

        request_payload = {
            "recipient": recipient_id,
            "message": message,
            "reference": reminder_id,
            "idempotency_key": idempotency_key or reminder_id,
        }

        try:
            response_data = self._post(request_payload)
        except _TransportSendError as exc:
            return TransportResult(
                success=False,
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_recipient(recipient_id)})",
                retry_after_ms=exc.retry_after_ms,
            )

        message_id = response_data.get("message_id")
        return TransportResult(
            success=True,
            attempted_at=attempted_at,
            message_id=str(message_id) if message_id is not None else None,
        )

    def _record_rate_limit(self, headers: Message | None) -> None:
        if headers is None or headers.get("X-RateLimit-Limit") is None:
            return
        self._rate_limiter.update_from_response_metadata(
            self._route,
            limit=_header_int(headers, "X-RateLimit-Limit"),
            remaining=_header_int(headers, "X-RateLimit-Remaining"),
            reset_after_seconds=_header_float(headers, "X-RateLimit-Reset-After"),
            is_global=(headers.get("X-RateLimit-Global") or "").lower() == "true",
        )

    def _post(self, body: dict[str, str]) -> dict[str, Any]:
        """Send a POST request to the messages endpoint."""
        url = f"{self._base_url}/v1/messages/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                self._record_rate_limit(response.headers)
                raw = response.read().decode("utf-8")
                return json.loads(raw) if raw else {}  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            self._record_rate_limit(exc.headers)
            retry_after = _header_float(exc.headers, "Retry-After")
            raise _TransportSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
                retry_after_ms=int(retry_after * 1000) if retry_after is not None else None,
            ) from exc
        except urllib.error.URLError as exc:
            raise _TransportSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _TransportSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc
        except json.JSONDecodeError as exc:
            raise _TransportSendError(
                error_code="invalid_response",
                message=f"Provider returned invalid JSON: {exc}",
            ) from exc


def mask_recipient(recipient_id: str) -> str:
    normalized = recipient_id.strip()
    if not normalized:
        return "***"

    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"


def create_transport(
    *,
    sender_type: str,
    enabled: bool,
    base_url: str,
    api_key: str,
    timeout_seconds: int,
    rate_limiter: RateLimiter | None = None,
    clock: Clock = now_utc,
) -> Transport:
    normalized = sender_type.strip().lower()
    if normalized == "http":
        return HttpTransport(
            base_url=base_url,
            api_key=api_key,
            timeout_seconds=timeout_seconds,
            rate_limiter=rate_limiter,
            clock=clock,
        )
    if normalized == "stub":
        return StubTransport(enabled=enabled, clock=clock)
    raise RuntimeError(f"unsupported TRANSPORT_SENDER_TYPE: {sender_type}")
