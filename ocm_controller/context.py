"""
Cancellation and deadline handling.

Every operation that performs I/O accepts a :class:`Context`. Long running loops
(blob streaming, tar extraction, reference resolution) call :meth:`Context.check`
between steps so an external cancel or an expired deadline stops them promptly.
"""

import threading
import time

from .errors import CancelledError


class Context:
    """
    Deadline plus cancel signal for one unit of work.

    Args:
        timeout: Seconds until the deadline, or None for no deadline
        cancel_event: Event set by the caller to abort the work
    """

    def __init__(self, timeout: float | None = None, cancel_event: threading.Event | None = None):
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        self.cancel_event = cancel_event or threading.Event()

    @classmethod
    def background(cls) -> "Context":
        """Context that is never cancelled and has no deadline."""
        return cls()

    def cancel(self) -> None:
        self.cancel_event.set()

    def done(self) -> bool:
        if self.cancel_event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self, default: float | None = None) -> float | None:
        """
        Seconds left before the deadline.

        Returns ``default`` when there is no deadline, otherwise the smaller of the
        remaining time and ``default``.
        """
        if self.deadline is None:
            return default
        left = max(self.deadline - time.monotonic(), 0.0)
        if default is None:
            return left
        return min(left, default)

    def check(self) -> None:
        """Raise CancelledError if the work should stop."""
        if self.cancel_event.is_set():
            raise CancelledError("operation cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise CancelledError("deadline exceeded")
