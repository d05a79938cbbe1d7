"""
ErrorPresenter - User-friendly error message generation.

Transforms resilience and configuration exceptions into actionable,
user-friendly messages. Supports verbose mode for technical details.
"""

import traceback
from typing import List, Tuple

from pydantic import ValidationError

from ...domain.exceptions import (
    CancellationError,
    CircuitOpenError,
    DeadlineExceededError,
    MaxRetriesExceededError,
    RateLimitExceededError,
    RateLimitWaitTimeoutError,
    RateLimitedError,
    RetryCancelledError,
    TooManyRequestsError,
    UnknownTierError,
)


class ErrorPresenter:
    """
    Presents errors to users with helpful messages and actions.

    Provides two modes:
    - Normal: User-friendly message with actionable suggestions
    - Verbose: Technical details including cause chain and stack trace
    """

    @staticmethod
    def present(error: BaseException, verbose: bool = False) -> str:
        """
        Present error with user-friendly message.

        Args:
            error: Exception to present
            verbose: Show technical details (stack trace, error type)

        Returns:
            Formatted error message
        """
        message, suggestions = ErrorPresenter._get_friendly_message(error)

        if verbose:
            return ErrorPresenter._format_verbose(error, message, suggestions)
        else:
            return ErrorPresenter._format_friendly(message, suggestions)

    @staticmethod
    def _get_friendly_message(error: BaseException) -> Tuple[str, List[str]]:
        """
        Get friendly message and actionable suggestions for error.

        Args:
            error: Exception to analyze

        Returns:
            Tuple of (message, suggestions)
        """
        error_str = str(error)

        if isinstance(error, CircuitOpenError):
            return (
                f"Circuit breaker for '{error.name}' is open",
                [
                    f"The dependency failed repeatedly; calls resume in {error.retry_after:.1f}s",
                    "Check the dependency's status page or health endpoint",
                    "Use call_with_fallback() to serve a degraded response meanwhile",
                ]
            )

        if isinstance(error, TooManyRequestsError):
            return (
                f"Circuit breaker for '{error.name}' is probing recovery",
                [
                    f"Only {error.max_requests} trial calls are allowed while half-open",
                    "Retry shortly; the breaker closes once probes succeed",
                ]
            )

        if isinstance(error, MaxRetriesExceededError):
            target = error.name or "the operation"
            return (
                f"All {error.attempts} attempts failed for {target}",
                [
                    f"Last error: {type(error.last_error).__name__}: {error.last_error}",
                    "Increase retry.max_retries or retry.max_interval in config.yaml",
                    "Check whether the dependency is reachable",
                ]
            )

        if isinstance(error, RetryCancelledError):
            return (
                f"Retry cancelled after {error.attempts} attempts",
                [
                    f"Reason: {error.cause}",
                    "Give the operation a longer deadline if it needs more time",
                ]
            )

        if isinstance(error, RateLimitWaitTimeoutError):
            return (
                f"Rate limit for '{error.name}' would delay the call too long",
                [
                    f"Required wait {error.required_wait:.2f}s exceeds the {error.budget:.2f}s budget",
                    "Raise rate_limit.wait_timeout or rate_limit.burst in config.yaml",
                    "Spread calls out or batch them",
                ]
            )

        if isinstance(error, RateLimitExceededError):
            return (
                f"Rate limit exceeded for '{error.name}'",
                [
                    "Wait for a token with wait() instead of try_acquire()",
                    "Raise rate_limit.rate_per_second if the provider allows it",
                ]
            )

        if isinstance(error, RateLimitedError):
            hint = f" (retry after {error.retry_after:.1f}s)" if error.retry_after is not None else ""
            return (
                f"The dependency throttled the call{hint}",
                [
                    "Enable rate_limit.adaptive so the limiter honours Retry-After",
                    "Lower rate_limit.rate_per_second below the provider's limit",
                ]
            )

        if isinstance(error, UnknownTierError):
            return (
                f"Unknown service tier: {error.tier}",
                [
                    "Declare the tier under 'tiers:' in config.yaml",
                    "Check for typos in the tier name",
                ]
            )

        if isinstance(error, DeadlineExceededError):
            return (
                "Operation deadline exceeded",
                [
                    "Increase the timeout passed to CancellationToken",
                    "Lower retry delays so attempts fit in the deadline",
                ]
            )

        if isinstance(error, CancellationError):
            return (
                "Operation cancelled",
                []
            )

        if isinstance(error, ValidationError):
            problems = [
                f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}"
                for e in error.errors()
            ]
            return (
                "Invalid configuration",
                problems + ["Show the effective configuration: `steadycall config --show`"]
            )

        if isinstance(error, FileNotFoundError):
            file_path = str(error).replace("Configuration file not found: ", "").replace("[Errno 2] No such file or directory: ", "").strip("'\"")
            return (
                f"File not found: {file_path}",
                [
                    "Check the file path is correct",
                    "Create a default config: `steadycall config --init`",
                    "Check for typos in the path"
                ]
            )

        if isinstance(error, PermissionError):
            path = str(error).replace("[Errno 13] Permission denied: ", "").strip("'\"")
            return (
                f"Permission denied: {path}",
                [
                    f"Check file permissions: `ls -la {path}`",
                    "Ensure you have write access to the config and log directories",
                ]
            )

        if isinstance(error, KeyboardInterrupt):
            return (
                "Operation cancelled by user",
                []
            )

        if isinstance(error, ValueError) and "Invalid YAML" in error_str:
            return (
                "Configuration file is not valid YAML",
                [
                    error_str,
                    "Check indentation and quoting",
                ]
            )

        error_type = type(error).__name__
        error_msg = error_str if error_str else "No details available"

        return (
            f"An error occurred: {error_type}",
            [
                f"Error details: {error_msg}",
                "Run with --verbose for more information",
                "Check the log file for details"
            ]
        )

    @staticmethod
    def _format_friendly(message: str, suggestions: List[str]) -> str:
        """
        Format user-friendly error message.

        Args:
            message: Main error message
            suggestions: List of actionable suggestions

        Returns:
            Formatted string
        """
        output = [f"❌ Error: {message}"]

        if suggestions:
            output.append("")
            output.append("💡 Suggestions:")
            for suggestion in suggestions:
                output.append(f"  • {suggestion}")

        return "\n".join(output)

    @staticmethod
    def _format_verbose(error: BaseException, message: str, suggestions: List[str]) -> str:
        """
        Format verbose error message with technical details.

        Args:
            error: Original exception
            message: User-friendly message
            suggestions: Actionable suggestions

        Returns:
            Formatted string with full details
        """
        output = [ErrorPresenter._format_friendly(message, suggestions)]

        output.append("")
        output.append("🔍 Technical Details:")
        output.append(f"  Error Type: {type(error).__name__}")
        output.append(f"  Error Message: {str(error)}")

        # Walk the whole cause chain; resilience errors wrap one another
        seen = {id(error)}
        cause = error.__cause__
        while cause is not None and id(cause) not in seen:
            seen.add(id(cause))
            output.append(f"  Caused by: {type(cause).__name__}: {str(cause)}")
            cause = cause.__cause__

        output.append("")
        output.append("📋 Traceback:")
        tb_lines = traceback.format_exception(type(error), error, error.__traceback__)
        for line in tb_lines:
            for sub_line in line.rstrip().split('\n'):
                output.append(f"  {sub_line}")

        return "\n".join(output)
