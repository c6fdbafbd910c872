"""Cancellation tokens with optional deadlines."""

import threading
import time
from typing import Optional

from .exceptions import OperationCancelledError


class CancelToken:
    """Cancellation flag observed by long-running sync operations.

    A token is cancelled either explicitly (``cancel()``, e.g. on shutdown) or
    implicitly once its deadline passes.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._event = threading.Event()
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def timeout_for(self, default: float) -> float:
        """Socket timeout for a request made under this token."""
        remaining = self.remaining()
        if remaining is None:
            return default
        return max(0.001, min(default, remaining))

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelledError("Operation cancelled or deadline exceeded")


def never_cancelled() -> CancelToken:
    """Token without a deadline for callers that don't need cancellation."""
    return CancelToken()
