"""
SteadyCall Logging Infrastructure.

Centralized logging for the resilience layer:
- Console: human-readable lines on stderr
- File: one JSON object per line, daily rotation with retention
- Thread-local context fields merged into every record
- Singleton so every breaker, limiter and retry loop shares one configuration
"""

import json
import logging
import logging.handlers
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .context import LogContext

_RESERVED_ATTRS = frozenset([
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName",
])


class JSONFormatter(logging.Formatter):
    """
    Formats records as JSON with standard fields, extra fields and
    exception details.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        # Non-JSON values (enums, exceptions) fall back to str()
        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Console format: YYYY-MM-DD HH:MM:SS - LEVEL - message"""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


class SteadyCallLogger:
    """
    Process-wide logger for SteadyCall.

    Example:
        >>> logger = SteadyCallLogger.get_instance(
        ...     level="INFO",
        ...     log_file=Path("steadycall.log")
        ... )
        >>> logger.warning("Retrying stripe", extra={"attempt": 2})
    """

    _instance: Optional["SteadyCallLogger"] = None
    _lock: threading.Lock = threading.Lock()

    def __init__(
        self,
        level: str = "INFO",
        log_file: Optional[Path] = None,
        console: bool = True,
        rotation: str = "daily",
        retention_days: int = 30,
    ):
        """
        Initialize the SteadyCall logger.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_file: Path to the JSON log file (optional)
            console: Enable console output
            rotation: "daily" or "none"
            retention_days: Rotated files to keep
        """
        self.logger = logging.getLogger("steadycall")
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.propagate = False

        for handler in self.logger.handlers:
            handler.close()
        self.logger.handlers.clear()

        if console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_handler.setFormatter(HumanReadableFormatter())
            self.logger.addHandler(console_handler)

        if log_file:
            log_file = Path(log_file)
            log_file.parent.mkdir(parents=True, exist_ok=True)

            if rotation == "daily":
                file_handler = logging.handlers.TimedRotatingFileHandler(
                    filename=str(log_file),
                    when="midnight",
                    interval=1,
                    backupCount=retention_days,
                    encoding="utf-8",
                )
            else:
                file_handler = logging.FileHandler(str(log_file), encoding="utf-8")

            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(JSONFormatter())
            self.logger.addHandler(file_handler)

    @classmethod
    def get_instance(
        cls,
        level: str = "INFO",
        log_file: Optional[Path] = None,
        console: bool = True,
        rotation: str = "daily",
        retention_days: int = 30,
    ) -> "SteadyCallLogger":
        """
        Get the singleton, creating it on first use.

        Arguments only take effect on the call that creates the instance;
        use configure() to replace an existing one.

        Returns:
            Singleton SteadyCallLogger instance
        """
        if cls._instance is None:
            with cls._lock:
                # Double-check locking
                if cls._instance is None:
                    cls._instance = cls(
                        level=level,
                        log_file=log_file,
                        console=console,
                        rotation=rotation,
                        retention_days=retention_days,
                    )
        return cls._instance

    @classmethod
    def configure(
        cls,
        level: str = "INFO",
        log_file: Optional[Path] = None,
        console: bool = True,
        rotation: str = "daily",
        retention_days: int = 30,
    ) -> "SteadyCallLogger":
        """
        Replace the singleton with a freshly configured instance.

        Components created earlier keep working: they hold the wrapper, and
        every wrapper writes through the same "steadycall" stdlib logger.
        """
        with cls._lock:
            cls._instance = cls(
                level=level,
                log_file=log_file,
                console=console,
                rotation=rotation,
                retention_days=retention_days,
            )
        return cls._instance

    def _emit(self, level: int, message: str, kwargs: Dict[str, Any], stacklevel: int) -> None:
        # Explicit extra keys win over context fields of the same name
        context = LogContext.get_context()
        if context:
            kwargs = {**kwargs, "extra": {**context, **kwargs.get("extra", {})}}
        # Attribute module/function/line to the component that logged
        kwargs.setdefault("stacklevel", stacklevel)
        self.logger.log(level, message, **kwargs)

    def log(self, level: int, message: str, **kwargs) -> None:
        """Emit a record with the current LogContext fields merged into ``extra``."""
        self._emit(level, message, kwargs, stacklevel=3)

    def debug(self, message: str, **kwargs):
        self._emit(logging.DEBUG, message, kwargs, stacklevel=3)

    def info(self, message: str, **kwargs):
        self._emit(logging.INFO, message, kwargs, stacklevel=3)

    def warning(self, message: str, **kwargs):
        self._emit(logging.WARNING, message, kwargs, stacklevel=3)

    def error(self, message: str, **kwargs):
        self._emit(logging.ERROR, message, kwargs, stacklevel=3)

    def critical(self, message: str, **kwargs):
        self._emit(logging.CRITICAL, message, kwargs, stacklevel=3)


def get_logger(name: str) -> logging.Logger:
    """
    Get a child of the "steadycall" logger.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Standard library logger sharing SteadyCallLogger's handlers
    """
    return logging.getLogger(f"steadycall.{name}")
