"""Configuration schema definitions using dataclasses.

Defines the structure of the backup configuration. Everything is frozen, the
configuration is resolved once before any pipeline stage runs.
"""

from dataclasses import dataclass, field
from typing import Optional

DEFAULT_SNAPSHOT_COMMAND = ("timeshift", "--create", "--scripted")


@dataclass(frozen=True)
class VaultConfig:
    """Secrets vault configuration.

    Attributes:
        email: Account used to log in to the vault
        folder_name: Folder that receives the backup passphrases
        cli_path: Location of the vault CLI executable
        disk_unlock_item_id: Vault item holding the backup disk passphrase
    """

    email: str
    folder_name: str
    cli_path: str
    disk_unlock_item_id: str


@dataclass(frozen=True)
class BackupConfig:
    """Backup device and local paths.

    Attributes:
        device_path: Encrypted block device holding the snapshots
        mount_location: Where the unlocked device is expected to be mounted
        snapshot_location: Directory containing the snapshots
        staging_location: Scratch directory for the tarball and encrypted file
        snapshot_command: Command creating a new snapshot
        retry_attempts: Attempts for unmount and lock during cleanup
        retry_delay: Seconds between those attempts
    """

    device_path: str
    mount_location: str
    snapshot_location: str
    staging_location: str
    snapshot_command: tuple[str, ...] = DEFAULT_SNAPSHOT_COMMAND
    retry_attempts: int = 10
    retry_delay: float = 5.0


@dataclass(frozen=True)
class RemoteConfig:
    """Remote storage configuration.

    Attributes:
        destination: rclone destination, e.g. ``onedrive:backups``
        config: Path to the rclone configuration file
        cli_path: Location of the rclone executable
    """

    destination: str
    config: str
    cli_path: str = "rclone"


@dataclass(frozen=True)
class EncryptConfig:
    """Passphrase generation settings.

    Attributes:
        passphrase_length: Number of characters in each generated passphrase
        passphrase_charset: Allowed characters, ``tr`` style ranges permitted
    """

    passphrase_length: int
    passphrase_charset: str


@dataclass(frozen=True)
class GlobalConfig:
    """Process wide settings.

    Attributes:
        lock_file: Lock file guarding against concurrent runs
        log_file: Path to log file (None for no file logging)
    """

    lock_file: str = "/var/lock/escrow-backup.lock"
    log_file: Optional[str] = None


@dataclass(frozen=True)
class Config:
    """Root configuration object."""

    vault: VaultConfig
    backup: BackupConfig
    remote: RemoteConfig
    encrypt: EncryptConfig
    global_config: GlobalConfig = field(default_factory=GlobalConfig)
