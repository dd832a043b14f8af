"""Per-request time budget."""

import time
from typing import Optional

from shared.constants import DEFAULT_REQUEST_TIMEOUT_SECONDS, LAMBDA_SAFETY_MARGIN_MS
from shared.errors import RequestTimeoutError


class Deadline:
    """Wall-clock budget checked before each external call.

    Work that already completed stays in place when the deadline trips; every
    write is an idempotent upsert, so Stripe's retry simply finishes the job.
    """

    def __init__(self, seconds: float, clock=None):
        self._clock = clock or time.monotonic
        self.expires_at = self._clock() + max(seconds, 0.0)

    @classmethod
    def for_invocation(cls, context, timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS) -> "Deadline":
        """Budget bounded by both the configured timeout and the Lambda's remaining time."""
        seconds = timeout_seconds
        remaining_ms = _remaining_millis(context)
        if remaining_ms is not None:
            seconds = min(seconds, (remaining_ms - LAMBDA_SAFETY_MARGIN_MS) / 1000.0)
        return cls(seconds)

    def remaining(self) -> float:
        return max(self.expires_at - self._clock(), 0.0)

    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def check(self, step: str) -> None:
        if self.expired():
            raise RequestTimeoutError(step)


def _remaining_millis(context) -> Optional[int]:
    getter = getattr(context, "get_remaining_time_in_millis", None)
    if getter is None:
        return None
    try:
        return int(getter())
    except (TypeError, ValueError):
        return None
