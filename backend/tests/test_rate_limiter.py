from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from reminder_delivery.rate_limiter import RateLimiter


class _FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def test_bucket_allows_limit_then_blocks_until_window_resets() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(default_limit=2, default_window_ms=1000, clock=clock)

    assert limiter.check_rate_limit("send").allowed
    assert limiter.check_rate_limit("send").allowed
    blocked = limiter.check_rate_limit("send")
    clock.advance(milliseconds=400)
    still_blocked = limiter.check_rate_limit("send")
    clock.advance(milliseconds=600)
    reopened = limiter.check_rate_limit("send")

    assert blocked.allowed is False
    assert blocked.retry_after_ms == 1000
    assert still_blocked.retry_after_ms == 600
    assert reopened.allowed is True


def test_routes_have_independent_buckets() -> None:
    limiter = RateLimiter(default_limit=1, clock=_FakeClock())

    assert limiter.check_rate_limit("a").allowed
    assert limiter.check_rate_limit("b").allowed
    assert not limiter.check_rate_limit("a").allowed


def test_global_limit_blocks_every_route() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(clock=clock)

    limiter.update_from_response_metadata("send", remaining=0, reset_after_seconds=2, is_global=True)
    blocked = limiter.check_rate_limit("other")
    clock.advance(seconds=2)
    allowed = limiter.check_rate_limit("other")

    assert blocked.allowed is False
    assert blocked.retry_after_ms == 2000
    assert allowed.allowed is True


def test_response_metadata_defaults_and_status() -> None:
    limiter = RateLimiter(default_limit=7, clock=_FakeClock())

    limiter.update_from_response_metadata("send")

    status = limiter.status("send")
    assert status["remaining"] == 0
    assert status["limit"] == 7
    assert limiter.check_rate_limit("send").retry_after_ms == 1000
    assert limiter.status("unknown") == {"route": "unknown", "status": "no bucket"}
    overview = limiter.status()
    assert overview["global"] is None
    assert [entry["route"] for entry in overview["routes"]] == ["send"]


def test_clear_drops_all_buckets() -> None:
    limiter = RateLimiter(default_limit=1, clock=_FakeClock())
    limiter.check_rate_limit("send")
    limiter.update_from_response_metadata("send", is_global=True)

    limiter.clear()

    assert limiter.check_rate_limit("send").allowed
    assert limiter.status()["global"] is None


def test_rejects_non_positive_configuration() -> None:
    with pytest.raises(ValueError):
        RateLimiter(default_limit=0)
    with pytest.raises(ValueError):
        RateLimiter(default_window_ms=0)
