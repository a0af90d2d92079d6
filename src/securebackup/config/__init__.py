"""
Configuration management for SecureBackup.

This module handles loading, validating, and saving configuration settings.
"""

from securebackup.config.settings import (
    ConfigurationError,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    "Settings",
    "load_config",
    "save_config",
    "ConfigurationError",
]
