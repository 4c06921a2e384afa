"""Per-request deadline and cancellation state passed through the pipeline."""

import threading
import time
import uuid
from typing import Callable, Optional

from errors import DeadlineExceededError


class RequestContext:
    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        request_id: Optional[str] = None,
    ):
        self.clock = clock
        self.started_at = clock()
        self.timeout = timeout
        self.deadline = self.started_at + timeout if timeout else None
        self.request_id = request_id or uuid.uuid4().hex
        self._cancelled = threading.Event()

    def elapsed(self) -> float:
        return self.clock() - self.started_at

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - self.clock())

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def expired(self) -> bool:
        if self.cancelled:
            return True
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, stage: str) -> None:
        """Raise DeadlineExceededError when the budget is gone before ``stage`` starts."""
        if not self.expired():
            return
        raise DeadlineExceededError(
            f"Request deadline exceeded before {stage}",
            {
                "stage": stage,
                "timeout_seconds": self.timeout,
                "elapsed_seconds": round(self.elapsed(), 3),
                "cancelled": self.cancelled,
            },
        )

    def bound_timeout(self, timeout: float, *, stage: str = "operation") -> float:
        self.check(stage)
        remaining = self.remaining()
        if remaining is None:
            return timeout
        return min(timeout, remaining)
