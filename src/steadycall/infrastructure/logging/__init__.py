"""Logging infrastructure for SteadyCall."""

from .logger import SteadyCallLogger, get_logger
from .context import LogContext, logging_context

__all__ = ["SteadyCallLogger", "get_logger", "LogContext", "logging_context"]
