"""
Circuit breaker monitoring.

StateChangeQueue is a breaker listener that only enqueues events, so slow
handlers (alerting, metrics export) never run on the caller's path. A
background thread or an explicit drain() delivers events to handlers.
"""

import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from ...domain.exceptions import CancellationError
from ..logging import SteadyCallLogger, logging_context
from .cancellation import CancellationToken
from .circuit_breaker import CircuitBreakerState
from .registry import CircuitBreakerRegistry


@dataclass(frozen=True)
class StateChangeEvent:
    """One breaker transition."""
    name: str
    from_state: CircuitBreakerState
    to_state: CircuitBreakerState
    at: float


StateChangeHandler = Callable[[StateChangeEvent], None]

_STOP = object()


class StateChangeQueue:
    """
    Queued dispatch of breaker state changes.

    Example:
        >>> events = StateChangeQueue()
        >>> events.add_handler(lambda e: alerts.send(f"{e.name} -> {e.to_state.value}"))
        >>> config = CircuitBreakerConfig(on_state_change=events)
        >>> events.start()
    """

    def __init__(self, maxsize: int = 1000):
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._handlers: List[StateChangeHandler] = []
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.dropped = 0
        self.logger = SteadyCallLogger.get_instance()

    def __call__(
        self,
        name: str,
        from_state: CircuitBreakerState,
        to_state: CircuitBreakerState,
    ) -> None:
        event = StateChangeEvent(name, from_state, to_state, time.time())
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            self.logger.warning(
                f"State change queue full, dropping event for {name}",
                extra={
                    "circuit_breaker": name,
                    "from_state": from_state.value,
                    "to_state": to_state.value,
                    "dropped": self.dropped,
                },
            )

    def add_handler(self, handler: StateChangeHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def pending(self) -> int:
        return self._queue.qsize()

    def _deliver(self, event: StateChangeEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                self.logger.error(
                    f"State change handler failed for {event.name}",
                    exc_info=True,
                    extra={
                        "circuit_breaker": event.name,
                        "to_state": event.to_state.value,
                    },
                )

    def drain(self) -> int:
        """Deliver every queued event on the calling thread; returns the count."""
        delivered = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return delivered
            if event is _STOP:
                continue
            self._deliver(event)
            delivered += 1

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                return
            self._deliver(event)

    def start(self) -> None:
        """Start the daemon delivery thread (no-op when already running)."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run, name="steadycall-state-changes", daemon=True,
            )
            self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the delivery thread after it has handled already queued events."""
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()


def log_circuit_breaker_stats(registry: CircuitBreakerRegistry) -> int:
    """Log one stats line per registered breaker; returns how many were logged."""
    logger = SteadyCallLogger.get_instance()
    stats = registry.get_stats()
    with logging_context(operation="circuit_breaker_stats"):
        for entry in stats:
            log = logger.warning if entry.state != CircuitBreakerState.CLOSED else logger.info
            fields = entry.to_dict()
            fields["circuit_breaker"] = fields.pop("name")
            log(f"Circuit breaker stats: {entry.name}", extra=fields)
    return len(stats)


async def monitor_circuit_breakers(
    registry: CircuitBreakerRegistry,
    interval: float = 30.0,
    token: Optional[CancellationToken] = None,
) -> None:
    """
    Periodically log breaker stats until the token finishes.

    Returns normally on cancellation or deadline.

    Example:
        >>> token = CancellationToken()
        >>> task = asyncio.create_task(monitor_circuit_breakers(container.breakers, 10, token))
        >>> ...
        >>> token.cancel("shutdown")
    """
    if interval <= 0:
        raise ValueError("interval must be > 0")
    token = token if token else CancellationToken.background()

    while token.error() is None:
        log_circuit_breaker_stats(registry)
        try:
            await token.sleep(interval)
        except CancellationError:
            break
