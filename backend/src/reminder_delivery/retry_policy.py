from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import timedelta

DEFAULT_BASE_DELAY_MS = 60_000
DEFAULT_MAX_DELAY_MS = 3_600_000
DEFAULT_EXPONENTIAL_BASE = 2
DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class RetryPolicy:
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    exponential_base: int = DEFAULT_EXPONENTIAL_BASE
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        if self.base_delay_ms <= 0:
            raise ValueError("base_delay_ms must be positive")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be greater than or equal to base_delay_ms")
        if self.exponential_base < 1:
            raise ValueError("exponential_base must be at least 1")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be positive")

    def next_delay_ms(self, attempt: int) -> int:
        if attempt < 1:
            raise ValueError("attempt is indexed from 1")
        return min(self.base_delay_ms * self.exponential_base ** (attempt - 1), self.max_delay_ms)

    def next_delay(self, attempt: int) -> timedelta:
        return timedelta(milliseconds=self.next_delay_ms(attempt))

    @staticmethod
    def should_retry(attempt: int, max_attempts: int) -> bool:
        """``attempt`` is the count after the failed try has been added."""
        return attempt < max_attempts

    def with_max_attempts(self, max_attempts: int | None) -> RetryPolicy:
        if max_attempts is None or max_attempts == self.max_attempts:
            return self
        return replace(self, max_attempts=max_attempts)
