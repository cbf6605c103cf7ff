"""Configuration loading utilities for the engine.

This package provides YAML-based configuration loading with environment
overrides for queue, recovery and logging settings.
"""

from .loader import (
    load_engine_config,
    create_default_engine_config,
    save_default_config,
    default_config_path,
    ConfigLoadError
)

__all__ = [
    "load_engine_config",
    "create_default_engine_config",
    "save_default_config",
    "default_config_path",
    "ConfigLoadError"
]
