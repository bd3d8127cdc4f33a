from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from threading import Lock
from typing import Any

from .clock import Clock, now_utc, to_epoch_ms

DEFAULT_LIMIT = 50
DEFAULT_WINDOW_MS = 1000


@dataclass
class _Bucket:
    remaining: int
    reset_at_ms: int
    limit: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int | None = None


class RateLimiter:
    """Token bucket per logical route plus one global bucket fed by the provider."""

    def __init__(
        self,
        *,
        default_limit: int = DEFAULT_LIMIT,
        default_window_ms: int = DEFAULT_WINDOW_MS,
        clock: Clock = now_utc,
    ) -> None:
        if default_limit <= 0:
            raise ValueError("default_limit must be positive")
        if default_window_ms <= 0:
            raise ValueError("default_window_ms must be positive")
        self._default_limit = default_limit
        self._default_window_ms = default_window_ms
        self._clock = clock
        self._lock = Lock()
        self._buckets: dict[str, _Bucket] = {}
        self._global: _Bucket | None = None

    def _now_ms(self) -> int:
        return to_epoch_ms(self._clock())

    def check_rate_limit(self, route: str) -> RateLimitDecision:
        now_ms = self._now_ms()
        with self._lock:
            if self._global is not None and self._global.reset_at_ms > now_ms and self._global.remaining <= 0:
                return RateLimitDecision(allowed=False, retry_after_ms=self._global.reset_at_ms - now_ms)

            bucket = self._buckets.get(route)
            if bucket is None:
                bucket = _Bucket(
                    remaining=self._default_limit,
                    reset_at_ms=now_ms + self._default_window_ms,
                    limit=self._default_limit,
                )
                self._buckets[route] = bucket

            if bucket.reset_at_ms <= now_ms:
                bucket.remaining = bucket.limit
                bucket.reset_at_ms = now_ms + self._default_window_ms

            if bucket.remaining <= 0:
                return RateLimitDecision(allowed=False, retry_after_ms=bucket.reset_at_ms - now_ms)

            bucket.remaining -= 1
            return RateLimitDecision(allowed=True)

    def update_from_response_metadata(
        self,
        route: str,
        *,
        limit: int | None = None,
        remaining: int | None = None,
        reset_after_seconds: float | None = None,
        is_global: bool = False,
    ) -> None:
        reset_after = timedelta(seconds=reset_after_seconds if reset_after_seconds is not None else 1.0)
        bucket = _Bucket(
            remaining=remaining if remaining is not None else 0,
            reset_at_ms=self._now_ms() + reset_after // timedelta(milliseconds=1),
            limit=limit if limit is not None else self._default_limit,
        )
        with self._lock:
            if is_global:
                self._global = bucket
            else:
                self._buckets[route] = bucket

    def status(self, route: str | None = None) -> dict[str, Any]:
        with self._lock:
            if route is not None:
                bucket = self._buckets.get(route)
                if bucket is None:
                    return {"route": route, "status": "no bucket"}
                return {"route": route, **vars(bucket)}
            return {
                "global": dict(vars(self._global)) if self._global is not None else None,
                "routes": [{"route": name, **vars(bucket)} for name, bucket in sorted(self._buckets.items())],
            }

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._global = None
