"""
Logging context for SteadyCall.

Fields such as the dependency name, request ID or operation are merged into
every log record emitted while they are set. Storage is a ContextVar, so each
thread and each asyncio task sees its own fields: two tasks awaiting the same
breaker concurrently never tag each other's records.

Example:
    >>> with logging_context(dependency="stripe", request_id="req-42"):
    ...     logger.info("Charge submitted")  # carries dependency and request_id
"""

from contextlib import contextmanager
from contextvars import ContextVar
from copy import deepcopy
from typing import Any, Dict, Mapping, Optional

# Replaced, never mutated: a task started inside a block must not see
# later changes made by its parent, and vice versa.
_fields: ContextVar[Optional[Mapping[str, Any]]] = ContextVar("steadycall_log_fields", default=None)

_MISSING = object()


class LogContext:
    """
    Structured logging fields for the current thread or task.

    Example:
        >>> LogContext.set("dependency", "plaid")
        >>> LogContext.get_context()
        {'dependency': 'plaid'}
    """

    @staticmethod
    def _current() -> Mapping[str, Any]:
        return _fields.get() or {}

    @classmethod
    def get_context(cls) -> Dict[str, Any]:
        """Deep copy of the current fields."""
        return deepcopy(dict(cls._current()))

    @classmethod
    def set(cls, key: str, value: Any) -> None:
        cls.update({key: value})

    @classmethod
    def update(cls, fields: Mapping[str, Any]) -> None:
        _fields.set({**cls._current(), **fields})

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        return cls._current().get(key, default)

    @classmethod
    def clear(cls) -> None:
        _fields.set({})

    @classmethod
    def remove(cls, *keys: str) -> None:
        """Drop the named fields, ignoring ones that are not set."""
        current = cls._current()
        if any(key in current for key in keys):
            _fields.set({k: v for k, v in current.items() if k not in keys})


@contextmanager
def logging_context(**fields):
    """
    Set logging fields for the duration of a block.

    On exit each field gets back the value it had on entry (or is removed if
    it had none); fields set by other code inside the block are kept.

        >>> with logging_context(dependency="truelayer", operation="sync"):
        ...     with logging_context(operation="retry_backoff"):
        ...         pass  # operation == "retry_backoff"
        ...     # operation == "sync" again

    Args:
        **fields: Fields to set (e.g., dependency="stripe")
    """
    before = LogContext._current()
    previous = {key: before.get(key, _MISSING) for key in fields}
    LogContext.update(fields)

    try:
        yield
    finally:
        restored = dict(LogContext._current())
        for key, value in previous.items():
            if value is _MISSING:
                restored.pop(key, None)
            else:
                restored[key] = value
        _fields.set(restored)
