"""Retry with capped exponential backoff, used by the polling watchers."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

T = TypeVar("T")


def _retry_everything(_: Exception) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 1
    base_interval: float = 0.0
    max_interval: float = 0.0
    retryable: Callable[[Exception], bool] = _retry_everything
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def __post_init__(self):
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be greater than 0")
        if self.base_interval > self.max_interval:
            raise ValueError("base_interval cannot be greater than max_interval")

    def interval(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return min(self.base_interval * (2 ** (attempt - 1)), self.max_interval)

    def call(self, fn: Callable[[int], T]) -> T:
        """Call ``fn(attempt)`` until it succeeds or the policy gives up."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(attempt)
            except Exception as e:
                if attempt >= self.max_attempts or not self.retryable(e):
                    raise
                self.sleep(self.interval(attempt))
