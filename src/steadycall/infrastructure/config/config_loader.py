"""Configuration loader with support for YAML files and environment variables."""

import os
from pathlib import Path
from typing import Optional, Dict, Any
import yaml

from .config_models import SteadyCallConfig


class ConfigLoader:
    """
    Load and manage SteadyCall configuration.

    Configuration is loaded in the following order (later sources override earlier):
    1. Default configuration (embedded in code)
    2. Global configuration (~/.steadycall/config.yaml)
    3. Project configuration (./steadycall.yaml or .steadycall.yaml)
    4. User-specified configuration file
    5. Environment variables (STEADYCALL_*)
    """

    ENV_PREFIX = "STEADYCALL_"
    ENV_SEPARATOR = "__"

    DEFAULT_CONFIG_PATHS = [
        Path.home() / ".steadycall" / "config.yaml",
        Path("./steadycall.yaml"),
        Path("./.steadycall.yaml"),
    ]

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> SteadyCallConfig:
        """
        Load configuration from multiple sources.

        Args:
            config_path: Optional path to configuration file

        Returns:
            SteadyCallConfig instance

        Raises:
            FileNotFoundError: config_path does not exist
            ValueError: A file is not valid YAML
            pydantic.ValidationError: The merged configuration is invalid
        """
        config_dict = {}

        for path in cls.DEFAULT_CONFIG_PATHS:
            if path.exists():
                config_dict = cls._merge_dicts(
                    config_dict,
                    cls._load_yaml_file(path)
                )

        if config_path:
            user_path = Path(config_path)
            if not user_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {config_path}")
            config_dict = cls._merge_dicts(
                config_dict,
                cls._load_yaml_file(user_path)
            )

        config_dict = cls._merge_dicts(
            config_dict,
            cls._load_from_env()
        )

        return SteadyCallConfig(**config_dict)

    @staticmethod
    def _load_yaml_file(path: Path) -> Dict[str, Any]:
        """
        Load YAML configuration file.

        Args:
            path: Path to YAML file

        Returns:
            Configuration dictionary
        """
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Invalid configuration in {path}: top level must be a mapping")
        return data

    @staticmethod
    def _merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """
        Recursively merge two dictionaries.

        Args:
            base: Base dictionary
            override: Dictionary with overrides

        Returns:
            Merged dictionary
        """
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigLoader._merge_dicts(result[key], value)
            else:
                result[key] = value

        return result

    @classmethod
    def _load_from_env(cls) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with STEADYCALL_ and use double
        underscores to separate nesting levels, since field names contain
        single underscores. For example:
        - STEADYCALL_LOGGING__LEVEL -> logging.level
        - STEADYCALL_DEFAULTS__RETRY__MAX_RETRIES -> defaults.retry.max_retries
        - STEADYCALL_DEPENDENCIES__STRIPE__RATE_LIMIT__BURST -> dependencies.stripe.rate_limit.burst

        Returns:
            Configuration dictionary from environment
        """
        config: Dict[str, Any] = {}

        for key, value in os.environ.items():
            if not key.startswith(cls.ENV_PREFIX):
                continue

            key_parts = [p for p in key[len(cls.ENV_PREFIX):].lower().split(cls.ENV_SEPARATOR) if p]
            if not key_parts:
                continue

            current = config
            for part in key_parts[:-1]:
                if not isinstance(current.get(part), dict):
                    current[part] = {}
                current = current[part]

            current[key_parts[-1]] = cls._convert_env_value(value)

        return config

    @staticmethod
    def _convert_env_value(value: str) -> Any:
        """
        Convert environment variable string to appropriate type.

        Args:
            value: String value from environment

        Returns:
            Converted value
        """
        # Boolean (words only, so "1" and "0" stay numbers)
        if value.lower() in ('true', 'yes', 'on'):
            return True
        if value.lower() in ('false', 'no', 'off'):
            return False

        # Integer
        try:
            return int(value)
        except ValueError:
            pass

        # Float
        try:
            return float(value)
        except ValueError:
            pass

        # List (comma-separated)
        if ',' in value:
            return [item.strip() for item in value.split(',')]

        # String
        return value

    @staticmethod
    def create_default_config(path: Optional[str] = None) -> Path:
        """
        Create a default configuration file.

        Args:
            path: Optional path for config file. If not provided, creates in ~/.steadycall/

        Returns:
            Path to created configuration file
        """
        if path:
            config_path = Path(path)
            config_path.parent.mkdir(parents=True, exist_ok=True)
        else:
            config_dir = Path.home() / ".steadycall"
            config_dir.mkdir(parents=True, exist_ok=True)
            config_path = config_dir / "config.yaml"

        default_config = SteadyCallConfig()
        yaml_content = default_config.to_yaml()

        yaml_with_comments = f"""# SteadyCall Configuration
#
# Retry, circuit breaker and rate limit settings per dependency. Override
# these settings with environment variables (STEADYCALL_*, nesting levels
# separated by "__") or by specifying --config at runtime.
#
# Example dependency section:
#
# dependencies:
#   stripe:
#     retry:
#       max_retries: 3
#       initial_interval: 0.5
#       retryable_errors: [OperationTimeoutError, ServiceUnavailableError]
#     rate_limit:
#       rate_per_second: 100
#       burst: 25
#       wait_timeout: 5

{yaml_content}
"""

        config_path.write_text(yaml_with_comments)

        return config_path

    @classmethod
    def get_config_info(cls) -> Dict[str, Any]:
        """
        Get information about configuration sources.

        Returns:
            Dictionary with configuration information
        """
        info = {
            "default_paths": [str(p) for p in cls.DEFAULT_CONFIG_PATHS],
            "existing_configs": [],
            "env_overrides": [],
        }

        for path in cls.DEFAULT_CONFIG_PATHS:
            if path.exists():
                info["existing_configs"].append(str(path))

        for key in os.environ.keys():
            if key.startswith(cls.ENV_PREFIX):
                info["env_overrides"].append(key)

        return info
