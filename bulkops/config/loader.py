"""Configuration loader for engine settings with YAML support and environment overrides.

This module loads EngineConfig from YAML files, applying the
environment-specific section selected by argument or the BULKOPS_ENV
variable, followed by explicit overrides.
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, Union
import logging

from ..models.config import EngineConfig


logger = logging.getLogger(__name__)

ENV_VAR = "BULKOPS_ENV"


class ConfigLoadError(Exception):
    """Exception raised when configuration loading fails."""
    pass


def default_config_path() -> Path:
    """Location of the bundled config/engine.yaml in the project root."""
    project_root = Path(__file__).parents[2]
    return project_root / "config" / "engine.yaml"


def load_engine_config(
    config_path: Optional[Union[str, Path]] = None,
    environment: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None
) -> EngineConfig:
    """Load EngineConfig from a YAML file with environment overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default location.
        environment: Environment name for override selection. If None, uses BULKOPS_ENV.
        overrides: Additional configuration overrides to apply.

    Returns:
        Validated EngineConfig instance.

    Raises:
        ConfigLoadError: If configuration loading or validation fails.

    Example:
        >>> config = load_engine_config("config/engine.yaml", environment="development")
        >>> config.queue.max_concurrent_requests
        2
    """
    config_path = Path(config_path) if config_path is not None else default_config_path()

    if not config_path.exists():
        raise ConfigLoadError(f"Config file not found: {config_path}")

    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML config: {e}") from e
    except IOError as e:
        raise ConfigLoadError(f"Failed to read config file: {e}") from e

    if config_data is None:
        config_data = {}
    if not isinstance(config_data, dict):
        raise ConfigLoadError("Config file must contain a YAML dictionary")

    if environment is None:
        environment = os.getenv(ENV_VAR, "production")

    environments = config_data.pop("environments", None) or {}
    if environment in environments:
        config_data = _deep_merge(config_data, environments[environment] or {})
        logger.info(f"Applied environment overrides for: {environment}")
    config_data["environment"] = environment

    if overrides:
        config_data = _deep_merge(config_data, overrides)
        logger.debug("Applied additional configuration overrides")

    try:
        return EngineConfig(**config_data)
    except Exception as e:
        raise ConfigLoadError(f"Failed to create EngineConfig: {e}") from e


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence.

    Args:
        base: Base configuration dictionary.
        override: Override values to merge in.

    Returns:
        Merged configuration dictionary.
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def create_default_engine_config() -> Dict[str, Any]:
    """Create a default engine configuration dictionary.

    Returns:
        Default configuration values suitable for YAML serialization.
    """
    return {
        "queue": {
            "max_requests_per_minute": 3000,
            "max_concurrent_requests": 5,
            "minimum_delay": 0.1,
            "retry_limit": 3,
            "initial_retry_delay": 1.0,
            "max_retry_delay": 60.0,
            "backoff_factor": 2.0,
            "jitter_ratio": 0.2,
        },
        "recovery": {
            "retry_ceiling": 3,
            "escalate_failed_rollback": True,
        },
        "logging": {
            "log_dir": None,
            "retention_days": 30,
            "max_entries_per_operation": 10000,
            "metric_thresholds": {
                "operation_duration": {"warning": 5000, "critical": 10000},
                "error_rate": {"warning": 0.1, "critical": 0.25},
                "resource_count": {"warning": 1000, "critical": 5000},
            },
        },
        "snapshot_dir": None,
        "environments": {
            "development": {
                "queue": {
                    "max_concurrent_requests": 2,
                    "max_requests_per_minute": 600,
                },
            },
            "test": {
                "queue": {
                    "minimum_delay": 0.0,
                    "initial_retry_delay": 0.01,
                    "max_retry_delay": 0.1,
                },
            },
        },
    }


def save_default_config(output_path: Union[str, Path]) -> None:
    """Save default engine configuration to a YAML file.

    Args:
        output_path: Path where to save the configuration file.

    Raises:
        ConfigLoadError: If file writing fails.
    """
    config_data = create_default_engine_config()

    try:
        with open(output_path, 'w') as f:
            yaml.dump(config_data, f, default_flow_style=False, sort_keys=False)
        logger.info(f"Saved default engine configuration to: {output_path}")
    except IOError as e:
        raise ConfigLoadError(f"Failed to save config file: {e}") from e
