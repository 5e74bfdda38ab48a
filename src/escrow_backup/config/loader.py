"""Configuration loading and validation.

Handles config file discovery, parsing, and validation with helpful error messages.
TOML is the native format, JSON files with the same structure are accepted too.
"""

import json
import tomllib
from pathlib import Path
from typing import Any

from ..passphrase import expand_charset
from .schema import (
    DEFAULT_SNAPSHOT_COMMAND,
    BackupConfig,
    Config,
    EncryptConfig,
    GlobalConfig,
    RemoteConfig,
    VaultConfig,
)


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


# Config file search paths in priority order, the last one is the JSON file
# read by the shell version of this tool
CONFIG_PATHS = [
    Path.home() / ".config" / "escrow-backup" / "config.toml",
    Path("/etc/escrow-backup/config.toml"),
    Path.home() / ".config" / "backup" / "config.json",
]

# Section and key names of that JSON layout
LEGACY_SECTIONS = {"bitwarden": "vault", "rclone": "remote"}
LEGACY_KEYS = {
    "vault": {"email_address": "email", "cli_executable": "cli_path"},
    "encrypt": {"passphrase_len": "passphrase_length"},
}

# Below this many characters a passphrase is flagged as weak
MIN_RECOMMENDED_LENGTH = 20


def find_config_file(explicit_path: str | None = None) -> Path | None:
    """Find configuration file.

    Args:
        explicit_path: Explicitly specified config path (highest priority)

    Returns:
        Path to config file, or None if not found
    """
    if explicit_path:
        path = Path(explicit_path)
        if path.exists():
            return path
        raise ConfigError(f"Config file not found: {explicit_path}")

    for path in CONFIG_PATHS:
        if path.exists():
            return path

    return None


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name)
    if section is None:
        raise ConfigError(f"Missing required section [{name}]")
    if not isinstance(section, dict):
        raise ConfigError(f"Section [{name}] must be a table")
    return section


def _require_str(section: dict[str, Any], name: str, key: str) -> str:
    value = section.get(key)
    if value is None:
        raise ConfigError(f"[{name}] missing required '{key}' field")
    if not isinstance(value, str):
        raise ConfigError(f"[{name}] '{key}' must be a string")
    if not value.strip():
        raise ConfigError(f"[{name}] '{key}' must not be empty")
    return value


def _positive_int(section: dict[str, Any], name: str, key: str, default=None) -> int:
    value = section.get(key, default)
    if value is None:
        raise ConfigError(f"[{name}] missing required '{key}' field")
    # bool is an int subclass, reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"[{name}] '{key}' must be an integer")
    if value <= 0:
        raise ConfigError(f"[{name}] '{key}' must be greater than zero")
    return value


def _parse_vault(data: dict[str, Any]) -> VaultConfig:
    """Parse vault configuration from dict."""
    return VaultConfig(
        email=_require_str(data, "vault", "email"),
        folder_name=_require_str(data, "vault", "folder_name"),
        cli_path=_require_str(data, "vault", "cli_path"),
        disk_unlock_item_id=_require_str(data, "vault", "disk_unlock_item_id"),
    )


def _parse_snapshot_command(data: dict[str, Any]) -> tuple[str, ...]:
    command = data.get("snapshot_command", DEFAULT_SNAPSHOT_COMMAND)
    if isinstance(command, str):
        raise ConfigError(
            "[backup] 'snapshot_command' must be a list of arguments, not a string"
        )
    if not command or not all(isinstance(arg, str) and arg for arg in command):
        raise ConfigError("[backup] 'snapshot_command' must be a non-empty list")
    return tuple(command)


def _parse_backup(data: dict[str, Any]) -> BackupConfig:
    """Parse backup configuration from dict."""
    delay = data.get("retry_delay", 5.0)
    if isinstance(delay, bool) or not isinstance(delay, (int, float)) or delay < 0:
        raise ConfigError("[backup] 'retry_delay' must be a non-negative number")

    return BackupConfig(
        device_path=_require_str(data, "backup", "device_path"),
        mount_location=_require_str(data, "backup", "mount_location"),
        snapshot_location=_require_str(data, "backup", "snapshot_location"),
        staging_location=_require_str(data, "backup", "staging_location"),
        snapshot_command=_parse_snapshot_command(data),
        retry_attempts=_positive_int(data, "backup", "retry_attempts", default=10),
        retry_delay=float(delay),
    )


def _parse_remote(data: dict[str, Any]) -> RemoteConfig:
    """Parse remote storage configuration from dict."""
    cli_path = data.get("cli_path", "rclone")
    if not isinstance(cli_path, str) or not cli_path:
        raise ConfigError("[remote] 'cli_path' must be a non-empty string")

    return RemoteConfig(
        destination=_require_str(data, "remote", "destination"),
        config=_require_str(data, "remote", "config"),
        cli_path=cli_path,
    )


def _parse_encrypt(data: dict[str, Any]) -> EncryptConfig:
    """Parse encryption configuration from dict."""
    charset = _require_str(data, "encrypt", "passphrase_charset")
    try:
        expand_charset(charset)
    except ValueError as e:
        raise ConfigError(f"[encrypt] invalid 'passphrase_charset': {e}") from e

    return EncryptConfig(
        passphrase_length=_positive_int(data, "encrypt", "passphrase_length"),
        passphrase_charset=charset,
    )


def _parse_global(data: dict[str, Any]) -> GlobalConfig:
    """Parse global configuration from dict."""
    if not isinstance(data, dict):
        raise ConfigError("Section [global] must be a table")
    lock_file = data.get("lock_file", GlobalConfig.lock_file)
    if not isinstance(lock_file, str) or not lock_file:
        raise ConfigError("[global] 'lock_file' must be a non-empty string")
    log_file = data.get("log_file")
    if log_file is not None and not isinstance(log_file, str):
        raise ConfigError("[global] 'log_file' must be a string")

    return GlobalConfig(lock_file=lock_file, log_file=log_file or None)


def _is_relative_to(path: Path, other: Path) -> bool:
    try:
        path.relative_to(other)
    except ValueError:
        return False
    return True


def _validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of warnings."""
    warnings = []

    for label, value in (
        ("backup.mount_location", config.backup.mount_location),
        ("backup.snapshot_location", config.backup.snapshot_location),
        ("backup.staging_location", config.backup.staging_location),
    ):
        if not Path(value).is_absolute():
            warnings.append(f"{label} '{value}' is not an absolute path")

    staging = Path(config.backup.staging_location)
    snapshots = Path(config.backup.snapshot_location)
    if _is_relative_to(staging, snapshots):
        warnings.append(
            "Staging location is inside the snapshot location, "
            "staging files may be picked up as snapshots"
        )

    if config.encrypt.passphrase_length < MIN_RECOMMENDED_LENGTH:
        warnings.append(
            f"Passphrase length {config.encrypt.passphrase_length} is short, "
            f"at least {MIN_RECOMMENDED_LENGTH} characters are recommended"
        )

    if len(expand_charset(config.encrypt.passphrase_charset)) < 16:
        warnings.append("Passphrase charset has fewer than 16 characters")

    return warnings


def _read_file(path: Path) -> dict[str, Any]:
    if path.suffix == ".json":
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON syntax: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read config file: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Top level of the JSON config must be an object")
        return data

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML syntax: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {e}")


def _translate_legacy(data: dict[str, Any]) -> dict[str, Any]:
    """Rename sections and keys of the shell tool's ``config.json``.

    Files already using the native names pass through unchanged.
    """
    if not any(old in data for old in LEGACY_SECTIONS):
        return data

    translated = dict(data)
    for old, new in LEGACY_SECTIONS.items():
        if old in translated and new not in translated:
            translated[new] = translated.pop(old)

    for name, renames in LEGACY_KEYS.items():
        section = translated.get(name)
        if not isinstance(section, dict):
            continue
        section = dict(section)
        for old, new in renames.items():
            if old in section and new not in section:
                section[new] = section.pop(old)
        translated[name] = section

    # jq hands every value over as text, so lengths may be quoted
    encrypt = translated.get("encrypt")
    if isinstance(encrypt, dict):
        length = encrypt.get("passphrase_length")
        if isinstance(length, str) and length.strip().isdigit():
            translated["encrypt"] = {**encrypt, "passphrase_length": int(length)}

    return translated


def load_config(path: Path | str) -> tuple[Config, list[str]]:
    """Load and validate configuration from a TOML (or JSON) file.

    Args:
        path: Path to configuration file

    Returns:
        Tuple of (Config object, list of warnings)

    Raises:
        ConfigError: If config is invalid or cannot be parsed
    """
    data = _translate_legacy(_read_file(Path(path)))

    config = Config(
        vault=_parse_vault(_section(data, "vault")),
        backup=_parse_backup(_section(data, "backup")),
        remote=_parse_remote(_section(data, "remote")),
        encrypt=_parse_encrypt(_section(data, "encrypt")),
        global_config=_parse_global(data.get("global", {})),
    )

    # Validate and collect warnings
    warnings = _validate_config(config)

    return config, warnings


def generate_example_config() -> str:
    """Generate example configuration file content."""
    return """# escrow-backup configuration
# See documentation for full options

[global]
lock_file = "/var/lock/escrow-backup.lock"
# log_file = "/var/log/escrow-backup.log"

[vault]
email = "me@example.com"
folder_name = "Backups"
cli_path = "/usr/local/bin/bw"
# Vault item holding the passphrase of the backup disk
disk_unlock_item_id = "00000000-0000-0000-0000-000000000000"

[backup]
device_path = "/dev/disk/by-uuid/00000000-0000-0000-0000-000000000000"
mount_location = "/media/root/backup"
snapshot_location = "/media/root/backup/timeshift/snapshots"
staging_location = "/var/tmp/escrow-backup"
# snapshot_command = ["timeshift", "--create", "--scripted"]
# retry_attempts = 10     # Unmount / lock attempts during cleanup
# retry_delay = 5.0       # Seconds between attempts

[remote]
destination = "onedrive:backups"
config = "/root/.config/rclone/rclone.conf"
# cli_path = "rclone"

[encrypt]
passphrase_length = 64
passphrase_charset = "A-Za-z0-9_!@#%^*"
"""
