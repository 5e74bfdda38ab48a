"""Pytest configuration and shared fixtures."""

import base64
import json
import subprocess

import pytest

from escrow_backup.config import (
    BackupConfig,
    Config,
    EncryptConfig,
    GlobalConfig,
    RemoteConfig,
    VaultConfig,
)


def completed(returncode=0, stdout=b"", stderr=b"", args=None):
    """Build a CompletedProcess as returned by exec_subprocess."""
    return subprocess.CompletedProcess(
        args=args or [], returncode=returncode, stdout=stdout, stderr=stderr
    )


class FakeBitwarden:
    """Minimal in-memory stand-in for the ``bw`` executable."""

    def __init__(self, items=None, folders=None, login_token=b"token-123\n"):
        self.items = list(items or [])
        self.folders = list(folders or [])
        self.login_token = login_token
        self.calls = []
        self.sessions = []
        self.inputs = []

    def _json(self, payload):
        return completed(stdout=json.dumps(payload).encode())

    def __call__(self, command, **kwargs):
        self.calls.append(command)
        self.sessions.append((kwargs.get("env") or {}).get("BW_SESSION"))
        if kwargs.get("input") is not None:
            self.inputs.append(kwargs["input"])
        args = command[1:]
        if args and args[0] == "--nointeraction":
            args = args[1:]

        if args[0] == "login":
            return completed(stdout=self.login_token)
        if args[0] == "logout":
            return completed()
        if args[:2] == ["list", "folders"]:
            return self._json([f for f in self.folders if args[3] in f["name"]])
        if args[:2] == ["list", "items"]:
            return self._json([i for i in self.items if args[3] in i["name"]])
        if args[:3] == ["get", "template", "folder"]:
            return self._json({"name": "Folder name"})
        if args[:3] == ["get", "template", "item.login"]:
            return self._json(
                {"uris": [], "username": "jdoe", "password": "hunter2", "totp": "x"}
            )
        if args[:3] == ["get", "template", "item"]:
            return self._json(
                {
                    "organizationId": None,
                    "folderId": None,
                    "type": 1,
                    "name": "Item name",
                    "notes": "Some notes",
                    "login": None,
                }
            )
        if args[:2] == ["get", "item"]:
            for item in self.items:
                if item.get("id") == args[2]:
                    return self._json(item)
            return completed(returncode=1, stderr=b"Not found.")
        if args[:2] == ["create", "folder"]:
            folder = json.loads(base64.b64decode(kwargs["input"]))
            folder["id"] = f"folder-{len(self.folders) + 1}"
            self.folders.append(folder)
            return self._json(folder)
        if args[:2] == ["create", "item"]:
            item = json.loads(base64.b64decode(kwargs["input"]))
            item["id"] = f"item-{len(self.items) + 1}"
            self.items.append(item)
            return self._json(item)
        raise AssertionError(f"unexpected bw call: {command}")


@pytest.fixture
def tmp_config_dir(tmp_path):
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_toml():
    """Return a sample valid TOML configuration string."""
    return """
[global]
lock_file = "/tmp/escrow-backup-test.lock"

[vault]
email = "me@example.com"
folder_name = "Backups"
cli_path = "/usr/local/bin/bw"
disk_unlock_item_id = "5f3c0a4e-disk"

[backup]
device_path = "/dev/sdb1"
mount_location = "/media/root/backup"
snapshot_location = "/media/root/backup/timeshift/snapshots"
staging_location = "/var/tmp/escrow-backup"
retry_attempts = 3
retry_delay = 0.5

[remote]
destination = "onedrive:backups"
config = "/root/.config/rclone/rclone.conf"

[encrypt]
passphrase_length = 64
passphrase_charset = "A-Za-z0-9_"
"""


@pytest.fixture
def minimal_config_toml():
    """Return a minimal valid TOML configuration string."""
    return """
[vault]
email = "me@example.com"
folder_name = "Backups"
cli_path = "bw"
disk_unlock_item_id = "disk"

[backup]
device_path = "/dev/sdb1"
mount_location = "/mnt/backup"
snapshot_location = "/mnt/backup/snapshots"
staging_location = "/var/tmp/staging"

[remote]
destination = "remote:"
config = "/etc/rclone.conf"

[encrypt]
passphrase_length = 32
passphrase_charset = "a-z0-9"
"""


@pytest.fixture
def config_file(tmp_config_dir, sample_config_toml):
    """Create a temporary config file with sample content."""
    config_path = tmp_config_dir / "config.toml"
    config_path.write_text(sample_config_toml)
    return config_path


@pytest.fixture
def minimal_config_file(tmp_config_dir, minimal_config_toml):
    """Create a temporary config file with minimal content."""
    config_path = tmp_config_dir / "minimal.toml"
    config_path.write_text(minimal_config_toml)
    return config_path


@pytest.fixture
def run_config(tmp_path):
    """A Config whose local paths live under tmp_path."""
    source = tmp_path / "src"
    staging = tmp_path / "stg"
    source.mkdir()
    staging.mkdir()
    return Config(
        vault=VaultConfig(
            email="me@example.com",
            folder_name="Backups",
            cli_path="bw",
            disk_unlock_item_id="disk-item",
        ),
        backup=BackupConfig(
            device_path="/dev/sdb1",
            mount_location=str(tmp_path / "mnt"),
            snapshot_location=str(source),
            staging_location=str(staging),
            retry_attempts=2,
            retry_delay=0,
        ),
        remote=RemoteConfig(destination="remote:backups", config="/etc/rclone.conf"),
        encrypt=EncryptConfig(passphrase_length=24, passphrase_charset="A-Za-z0-9"),
        global_config=GlobalConfig(lock_file=str(tmp_path / "escrow-backup.lock")),
    )
