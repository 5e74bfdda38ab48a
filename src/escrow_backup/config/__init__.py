"""Configuration system for escrow-backup.

This module provides TOML-based configuration loading, validation,
and schema definitions for the backup pipeline.
"""

from .loader import ConfigError, find_config_file, load_config
from .schema import (
    BackupConfig,
    Config,
    EncryptConfig,
    GlobalConfig,
    RemoteConfig,
    VaultConfig,
)

__all__ = [
    "BackupConfig",
    "Config",
    "EncryptConfig",
    "GlobalConfig",
    "RemoteConfig",
    "VaultConfig",
    "load_config",
    "find_config_file",
    "ConfigError",
]
