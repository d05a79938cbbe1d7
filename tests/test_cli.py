"""
Integration tests for the steadycall CLI.

Tests run the Typer app in-process with CliRunner against temp config files.
"""

import os

import pytest
import yaml
from typer.testing import CliRunner

from steadycall.adapters.cli.main import app
from steadycall.infrastructure.config.config_loader import ConfigLoader


@pytest.fixture
def runner():
    """Create CLI runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep the CLI away from real config files and STEADYCALL_* variables."""
    monkeypatch.setattr(ConfigLoader, "DEFAULT_CONFIG_PATHS", [tmp_path / "global.yaml"])
    for key in list(os.environ):
        if key.startswith(ConfigLoader.ENV_PREFIX):
            monkeypatch.delenv(key)


@pytest.fixture
def config_file(tmp_path):
    """Config with quiet logging and one custom dependency."""
    path = tmp_path / "steadycall.yaml"
    path.write_text(yaml.safe_dump({
        "logging": {"console": False, "file": ""},
        "dependencies": {
            "ledger": {
                "retry": {"max_retries": 0},
                "circuit_breaker": {"failure_threshold": 2},
            },
        },
        "tiers": {"free": {"rate_per_second": 1, "burst": 5}},
    }))
    return path


class TestInfoCommand:
    """Test suite for `steadycall info`."""

    def test_lists_dependencies(self, runner, config_file):
        """Test that configured and preset dependencies are listed."""
        result = runner.invoke(app, ["info", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "SteadyCall System Information" in result.stdout
        for name in ("ledger", "stripe", "plaid", "truelayer", "coingecko"):
            assert name in result.stdout
        assert "Service Tiers" in result.stdout

    def test_missing_config_file(self, runner, tmp_path):
        """Test that a missing --config file is reported without a traceback."""
        result = runner.invoke(app, ["info", "--config", str(tmp_path / "missing.yaml")])

        assert result.exit_code == 1
        assert "File not found" in result.stdout
        assert "Traceback" not in result.stdout

    def test_invalid_config_verbose(self, runner, tmp_path):
        """Test that --verbose adds technical details for invalid configs."""
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({
            "logging": {"console": False, "file": ""},
            "monitor": {"interval": -5},
        }))

        result = runner.invoke(app, ["info", "--config", str(path), "--verbose"])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.stdout
        assert "Technical Details" in result.stdout


class TestBackoffCommand:
    """Test suite for `steadycall backoff`."""

    def test_preset_schedule(self, runner, config_file):
        """Test the delay table for a preset provider."""
        result = runner.invoke(app, ["backoff", "stripe", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Retry schedule for stripe" in result.stdout
        assert "0.500s" in result.stdout
        assert "1.000s" in result.stdout
        assert "2.000s" in result.stdout
        assert "Total attempts: 4" in result.stdout
        assert "OperationTimeoutError" in result.stdout

    def test_no_retries(self, runner, config_file):
        """Test a dependency configured with max_retries: 0."""
        result = runner.invoke(app, ["backoff", "ledger", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "No retries" in result.stdout
        assert "Total attempts: 1" in result.stdout
        assert "Retries on: any error" in result.stdout


class TestConfigCommand:
    """Test suite for `steadycall config`."""

    def test_init_creates_file(self, runner, tmp_path):
        """Test --init with --path."""
        target = tmp_path / "new" / "steadycall.yaml"

        result = runner.invoke(app, ["config", "--init", "--path", str(target)])

        assert result.exit_code == 0
        assert "Configuration file created" in result.stdout
        assert target.exists()

    def test_show_prints_yaml(self, runner, config_file):
        """Test --show renders the merged configuration."""
        result = runner.invoke(app, ["config", "--show", "--path", str(config_file)])

        assert result.exit_code == 0
        assert "Current Configuration" in result.stdout
        assert "ledger:" in result.stdout
        assert "failure_threshold: 2" in result.stdout

    def test_show_invalid_yaml(self, runner, tmp_path):
        """Test --show with a malformed file."""
        path = tmp_path / "broken.yaml"
        path.write_text("defaults: [unclosed\n")

        result = runner.invoke(app, ["config", "--show", "--path", str(path)])

        assert result.exit_code == 1
        assert "not valid YAML" in result.stdout

    def test_locations(self, runner, tmp_path, monkeypatch):
        """Test the default listing of config sources."""
        monkeypatch.setenv("STEADYCALL_LOGGING__LEVEL", "DEBUG")

        result = runner.invoke(app, ["config"])

        assert result.exit_code == 0
        assert "No configuration files found" in result.stdout
        assert "STEADYCALL_LOGGING__LEVEL" in result.stdout
        assert "Default Locations" in result.stdout
