"""
Configuration settings management for SecureBackup.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.securebackup/config.yaml by default, with
the path overridable via the SECUREBACKUP_CONFIG environment variable.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".securebackup"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

DEFAULT_EXCLUDE_PATTERNS = [".git", "node_modules", "target", ".DS_Store", "Thumbs.db"]


@dataclass
class BackupSettings:
    """Backup engine settings."""

    exclude_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS))
    compute_hash: bool = True
    compression_level: int = 3
    manifest_name: str = "manifest.json"
    data_dir_name: str = "data"


@dataclass
class CryptoSettings:
    """Key derivation settings."""

    kdf_iterations: int = 600_000
    salt_length: int = 32
    min_password_length: int = 8


@dataclass
class RestoreSettings:
    """Restore engine settings."""

    preserve_mtime: bool = True
    verify_hash: bool = True


@dataclass
class Settings:
    """
    Complete SecureBackup configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with SECUREBACKUP_.

    Attributes:
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        backup: Scanning, compression, and layout settings.
        crypto: Password-based key derivation settings.
        restore: Restore behaviour settings.
    """

    log_level: str = "INFO"

    backup: BackupSettings = field(default_factory=BackupSettings)
    crypto: CryptoSettings = field(default_factory=CryptoSettings)
    restore: RestoreSettings = field(default_factory=RestoreSettings)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from SECUREBACKUP_CONFIG environment variable if set,
    otherwise returns the default path (~/.securebackup/config.yaml).
    """
    env_path = os.environ.get("SECUREBACKUP_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses SECUREBACKUP_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        try:
            settings = _apply_config_data(settings, config_data)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value in config file: {e}") from e

    try:
        settings = _apply_environment_overrides(settings)
    except ValueError as e:
        raise ConfigurationError(f"Invalid environment override: {e}") from e

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Args:
        settings: Settings instance to save.
        config_path: Optional path to configuration file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    if "log_level" in data:
        settings.log_level = str(data["log_level"]).upper()

    backup = data.get("backup") or {}
    if "exclude_patterns" in backup:
        settings.backup.exclude_patterns = [str(p) for p in backup["exclude_patterns"] or []]
    if "compute_hash" in backup:
        settings.backup.compute_hash = bool(backup["compute_hash"])
    if "compression_level" in backup:
        settings.backup.compression_level = int(backup["compression_level"])
    if "manifest_name" in backup:
        settings.backup.manifest_name = str(backup["manifest_name"])
    if "data_dir_name" in backup:
        settings.backup.data_dir_name = str(backup["data_dir_name"])

    crypto = data.get("crypto") or {}
    if "kdf_iterations" in crypto:
        settings.crypto.kdf_iterations = int(crypto["kdf_iterations"])
    if "salt_length" in crypto:
        settings.crypto.salt_length = int(crypto["salt_length"])
    if "min_password_length" in crypto:
        settings.crypto.min_password_length = int(crypto["min_password_length"])

    restore = data.get("restore") or {}
    if "preserve_mtime" in restore:
        settings.restore.preserve_mtime = bool(restore["preserve_mtime"])
    if "verify_hash" in restore:
        settings.restore.verify_hash = bool(restore["verify_hash"])

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "SECUREBACKUP_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "SECUREBACKUP_EXCLUDE": (
            "backup.exclude_patterns",
            lambda x: [p.strip() for p in x.split(",") if p.strip()],
        ),
        "SECUREBACKUP_COMPRESSION_LEVEL": ("backup.compression_level", int),
        "SECUREBACKUP_KDF_ITERATIONS": ("crypto.kdf_iterations", int),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if not 1 <= settings.backup.compression_level <= 22:
        raise ConfigurationError("compression_level must be between 1 and 22")

    if not settings.backup.manifest_name or "/" in settings.backup.manifest_name:
        raise ConfigurationError("manifest_name must be a plain file name")

    if not settings.backup.data_dir_name or "/" in settings.backup.data_dir_name:
        raise ConfigurationError("data_dir_name must be a plain directory name")

    if settings.crypto.kdf_iterations < 1000:
        raise ConfigurationError("kdf_iterations must be at least 1000")

    if settings.crypto.salt_length < 16:
        raise ConfigurationError("salt_length must be at least 16")

    if settings.crypto.min_password_length < 1:
        raise ConfigurationError("min_password_length must be at least 1")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "log_level": settings.log_level,
        "backup": {
            "exclude_patterns": list(settings.backup.exclude_patterns),
            "compute_hash": settings.backup.compute_hash,
            "compression_level": settings.backup.compression_level,
            "manifest_name": settings.backup.manifest_name,
            "data_dir_name": settings.backup.data_dir_name,
        },
        "crypto": {
            "kdf_iterations": settings.crypto.kdf_iterations,
            "salt_length": settings.crypto.salt_length,
            "min_password_length": settings.crypto.min_password_length,
        },
        "restore": {
            "preserve_mtime": settings.restore.preserve_mtime,
            "verify_hash": settings.restore.verify_hash,
        },
    }
