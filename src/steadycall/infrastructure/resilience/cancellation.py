"""
Cancellation tokens.

A token carries an optional deadline and can be cancelled from any thread.
Retry backoff waits and rate-limiter waits sleep on a token so that a caller
giving up interrupts them immediately instead of after the full delay.

Native asyncio task cancellation is independent: ``asyncio.CancelledError``
raised inside ``sleep()`` propagates unchanged.
"""

import asyncio
import threading
import time
from typing import Callable, List, Optional, Tuple

from ...domain.exceptions import (
    CancellationError,
    ContextCancelledError,
    DeadlineExceededError,
)


def _wake(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


class CancellationToken:
    """
    Deadline plus explicit cancellation, usable from tasks and threads.

    Example:
        >>> token = CancellationToken(timeout=5.0)
        >>> await execute_with_retry(fetch_balance, policy, token=token)
        >>> token.cancel()  # from anywhere, aborts pending waits
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Create a token.

        Args:
            timeout: Seconds until the deadline; None for no deadline
            clock: Monotonic clock, injectable for tests
        """
        self._clock = clock
        self._deadline = clock() + timeout if timeout is not None else None
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._error: Optional[CancellationError] = None
        self._waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []

    @classmethod
    def background(cls) -> "CancellationToken":
        """A token that is never cancelled and has no deadline."""
        return cls()

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    @property
    def cancelled(self) -> bool:
        """True once the token is done for any reason."""
        return self.error() is not None

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without a deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def error(self) -> Optional[CancellationError]:
        """The reason the token is done, or None while it is still live."""
        if self._error is None and self._deadline is not None:
            if self._clock() >= self._deadline:
                self._finish(DeadlineExceededError())
        return self._error

    def cancel(self, reason: str = "context canceled") -> None:
        """Cancel the token and wake every pending wait. Idempotent."""
        self._finish(ContextCancelledError(reason))

    def _finish(self, error: CancellationError) -> None:
        with self._lock:
            if self._error is not None:
                return
            self._error = error
            waiters, self._waiters = self._waiters, []

        self._event.set()
        for loop, future in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(_wake, future)

    def _wait_window(self, delay: float) -> Tuple[float, bool]:
        """Clamp a delay to the deadline; flag when the deadline is binding."""
        remaining = self.remaining()
        if remaining is not None and remaining <= delay:
            return remaining, True
        return delay, False

    def _raise_if_done(self, deadline_reached: bool) -> None:
        if deadline_reached:
            # Timers may fire a hair early; the deadline is what we waited for
            self._finish(DeadlineExceededError())
        error = self.error()
        if error is not None:
            raise error

    async def sleep(self, delay: float) -> None:
        """
        Sleep for ``delay`` seconds unless the token finishes first.

        Raises:
            ContextCancelledError: Token was cancelled before or during the wait
            DeadlineExceededError: Deadline passed before or during the wait
        """
        self._raise_if_done(False)
        window, deadline_reached = self._wait_window(max(0.0, delay))

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        with self._lock:
            if self._error is None:
                self._waiters.append((loop, future))
            else:
                future.set_result(None)

        try:
            if window > 0:
                await asyncio.wait({future}, timeout=window)
        finally:
            with self._lock:
                if (loop, future) in self._waiters:
                    self._waiters.remove((loop, future))
            if not future.done():
                future.cancel()

        self._raise_if_done(deadline_reached)

    def sleep_sync(self, delay: float) -> None:
        """Blocking counterpart of sleep() for threaded callers."""
        self._raise_if_done(False)
        window, deadline_reached = self._wait_window(max(0.0, delay))
        if window > 0:
            self._event.wait(window)
        self._raise_if_done(deadline_reached)

    def __repr__(self) -> str:
        state = "done" if self._error is not None else "live"
        return f"<CancellationToken {state} deadline={self._deadline}>"
