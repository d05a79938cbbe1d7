"""
Tests for logging infrastructure.

Tests use real file I/O and logging, not mocks.
"""

import json
import logging
import logging.handlers

from steadycall.infrastructure.logging import SteadyCallLogger, get_logger


class TestSteadyCallLogger:
    """Test suite for SteadyCallLogger - Core logging functionality."""

    def test_singleton_pattern(self, tmp_path):
        """Test that SteadyCallLogger is a singleton."""
        log_file = tmp_path / "test.log"

        logger1 = SteadyCallLogger.get_instance(log_file=log_file, console=False)
        logger2 = SteadyCallLogger.get_instance(log_file=log_file, console=False)

        assert logger1 is logger2, "Should return same instance"

    def test_configure_replaces_instance(self, tmp_path):
        """Test that configure() swaps the singleton for a new configuration."""
        first = SteadyCallLogger.get_instance(console=False)

        second = SteadyCallLogger.configure(level="DEBUG", log_file=tmp_path / "new.log", console=False)

        assert second is not first
        assert SteadyCallLogger.get_instance() is second
        assert second.logger.level == logging.DEBUG

    def test_dual_output_console_and_file(self, tmp_path, capsys):
        """Test logger writes to both console (stderr) and file."""
        log_file = tmp_path / "test.log"
        logger = SteadyCallLogger.configure(level="INFO", log_file=log_file, console=True)

        logger.info("Circuit breaker opened: stripe")

        captured = capsys.readouterr()
        assert "Circuit breaker opened: stripe" in captured.err
        assert "INFO" in captured.err
        assert "{" not in captured.err, "Console should not be JSON format"
        assert log_file.exists(), "Log file should be created"

    def test_json_format_in_file(self, tmp_path):
        """Test that file logs use JSON format."""
        log_file = tmp_path / "test.log"
        logger = SteadyCallLogger.configure(level="INFO", log_file=log_file, console=False)

        logger.info("JSON test message")

        with open(log_file) as f:
            log_data = json.loads(f.read().strip())

        assert log_data["message"] == "JSON test message"
        assert log_data["level"] == "INFO"
        assert log_data["logger"] == "steadycall"
        assert "timestamp" in log_data

    def test_log_level_filtering(self, tmp_path):
        """Test that INFO level does not log DEBUG."""
        log_file = tmp_path / "test.log"
        logger = SteadyCallLogger.configure(level="INFO", log_file=log_file, console=False)

        logger.debug("Debug message - should not appear")
        logger.info("Info message - should appear")
        logger.warning("Warning message - should appear")

        with open(log_file) as f:
            lines = f.readlines()

        assert len(lines) == 2, "Should only log INFO and WARNING (not DEBUG)"

    def test_all_levels(self, tmp_path):
        """Test different log levels work correctly."""
        log_file = tmp_path / "test.log"
        logger = SteadyCallLogger.configure(level="DEBUG", log_file=log_file, console=False)

        logger.debug("d")
        logger.info("i")
        logger.warning("w")
        logger.error("e")
        logger.critical("c")

        with open(log_file) as f:
            levels = [json.loads(line)["level"] for line in f]

        assert levels == ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

    def test_daily_rotation_configuration(self, tmp_path):
        """Test that daily rotation is configured correctly."""
        logger = SteadyCallLogger.configure(
            log_file=tmp_path / "test.log",
            console=False,
            rotation="daily",
            retention_days=14,
        )

        file_handlers = [
            h for h in logger.logger.handlers
            if isinstance(h, logging.handlers.TimedRotatingFileHandler)
        ]

        assert len(file_handlers) == 1, "Should have one TimedRotatingFileHandler"
        assert file_handlers[0].when == "MIDNIGHT"
        assert file_handlers[0].backupCount == 14

    def test_no_rotation_uses_plain_file_handler(self, tmp_path):
        """Test rotation='none'."""
        logger = SteadyCallLogger.configure(
            log_file=tmp_path / "test.log", console=False, rotation="none",
        )

        handlers = logger.logger.handlers
        assert len(handlers) == 1
        assert type(handlers[0]) is logging.FileHandler

    def test_extra_fields_in_logs(self, tmp_path):
        """Test that extra fields are written as JSON keys."""
        log_file = tmp_path / "test.log"
        logger = SteadyCallLogger.configure(level="INFO", log_file=log_file, console=False)

        logger.info(
            "Retry attempt failed",
            extra={
                "dependency": "plaid",
                "attempt": 2,
                "timing": {"delay_seconds": 1.5},
            },
        )

        with open(log_file) as f:
            log_data = json.loads(f.read().strip())

        assert log_data["dependency"] == "plaid"
        assert log_data["attempt"] == 2
        assert log_data["timing"]["delay_seconds"] == 1.5

    def test_records_name_the_calling_component(self, tmp_path):
        """Test that module, function and line point at the code that logged."""
        from steadycall.infrastructure.resilience import CircuitBreaker

        log_file = tmp_path / "caller.log"
        logger = SteadyCallLogger.configure(level="INFO", log_file=log_file, console=False)

        logger.info("direct")
        logger.log(logging.WARNING, "via log()")
        CircuitBreaker("ledger").reset()

        with open(log_file) as f:
            records = [json.loads(line) for line in f]

        assert records[0]["function"] == "test_records_name_the_calling_component"
        assert records[0]["module"] == "test_logging_infrastructure"
        assert records[1]["function"] == "test_records_name_the_calling_component"
        assert records[1]["level"] == "WARNING"
        assert records[2]["module"] == "circuit_breaker"
        assert records[2]["function"] == "reset"

    def test_get_logger_helper(self, tmp_path):
        """Test that get_logger() returns a child sharing the steadycall handlers."""
        log_file = tmp_path / "child.log"
        SteadyCallLogger.configure(level="INFO", log_file=log_file, console=False)

        child = get_logger("payments")
        child.info("From child logger")

        assert child.name == "steadycall.payments"
        with open(log_file) as f:
            assert json.loads(f.read().strip())["message"] == "From child logger"

    def test_exception_logging(self, tmp_path):
        """Test that exceptions are logged with stack traces."""
        log_file = tmp_path / "exception.log"
        logger = SteadyCallLogger.configure(level="ERROR", log_file=log_file, console=False)

        try:
            raise ConnectionError("upstream reset")
        except ConnectionError as e:
            logger.error("Call failed", exc_info=True, extra={"error_type": type(e).__name__})

        with open(log_file) as f:
            log_data = json.loads(f.read().strip())

        assert log_data["exception"]["type"] == "ConnectionError"
        assert log_data["exception"]["message"] == "upstream reset"
        assert "Traceback" in log_data["exception"]["traceback"]


class TestLoggingConfiguration:
    """Test logging configuration models."""

    def test_logging_config_structure(self):
        """Test LoggingConfig fields and normalization."""
        from steadycall.infrastructure.config.config_models import LoggingConfig

        config = LoggingConfig(level="debug", file="./steadycall.log", console=True)

        assert config.level == "DEBUG"
        assert config.file == "./steadycall.log"
        assert config.console is True
