"""Bounded retries over result-returning calls.

Calls report their outcome as an :class:`Attempt` instead of raising, which
keeps "try again?" decisions in one place for both outbound channel sends and
language-model requests.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF: Sequence[float] = (2.0, 4.0, 8.0)


@dataclass(frozen=True)
class Attempt(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: str | None = None
    retryable: bool = False

    @classmethod
    def success(cls, value: T) -> "Attempt[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str, *, retryable: bool) -> "Attempt[T]":
        return cls(ok=False, error=error, retryable=retryable)


class RetryPolicy:
    """Run a call up to ``max_attempts`` times, sleeping ``backoff[i]`` between tries.

    The last backoff value is reused when there are more retries than delays.
    Non-retryable failures stop immediately.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff: Sequence[float] = DEFAULT_BACKOFF,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff = tuple(backoff) or (0.0,)
        self._sleep = sleep

    def delay_for(self, retry_index: int) -> float:
        return self.backoff[min(retry_index, len(self.backoff) - 1)]

    def run(self, call: Callable[[], Attempt[T]], *, label: str = "call") -> Attempt[T]:
        attempt: Attempt[T] = Attempt.failure("not attempted", retryable=False)
        for index in range(self.max_attempts):
            attempt = call()
            if attempt.ok or not attempt.retryable:
                return attempt
            if index + 1 < self.max_attempts:
                delay = self.delay_for(index)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                    label,
                    index + 1,
                    self.max_attempts,
                    attempt.error,
                    delay,
                )
                self._sleep(delay)
        logger.error("%s failed after %d attempts: %s", label, self.max_attempts, attempt.error)
        return attempt
