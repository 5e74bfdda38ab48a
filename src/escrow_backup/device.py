# pyright: standard

"""escrow-backup: escrow_backup/device.py
Unlock, mount, unmount and lock the encrypted backup disk via udisksctl.
"""

import logging
import os
import re
import subprocess
import time
from pathlib import Path
from typing import Callable

from . import __util__
from .__util__ import AbortError

logger = logging.getLogger(__name__)

# udisksctl prints 'Unlocked /dev/sdb1 as /dev/dm-3.'
UNLOCK_RE = re.compile(r"^Unlocked (?P<raw>/\S+) as (?P<clear>/\S+?)\.?$")
# and 'Mounted /dev/dm-3 at /media/root/backup' (older releases add a '.')
MOUNT_RE = re.compile(r"^Mounted (?P<device>/\S+) at (?P<path>/.*?)\.?$")


class UnlockError(AbortError):
    """Unlocking the backup disk failed.

    Attributes:
        unlocked: True when udisksctl reported success but its output could
            not be understood, the disk is then open and must be locked again
    """

    def __init__(self, message: str, unlocked: bool = False) -> None:
        super().__init__(message)
        self.unlocked = unlocked


class MountError(AbortError):
    """Mounting failed or the device ended up in an unexpected place."""

    pass


def parse_unlock_output(output: str) -> str:
    """Extract the clear device path from ``udisksctl unlock`` output."""
    match = UNLOCK_RE.match(output.strip())
    if not match:
        raise UnlockError(f"Unexpected output from unlock: {output.strip()!r}")
    return match.group("clear")


def parse_mount_output(output: str) -> str:
    """Extract the mount point from ``udisksctl mount`` output."""
    match = MOUNT_RE.match(output.strip())
    if not match:
        raise MountError(f"Unexpected output from mount: {output.strip()!r}")
    return match.group("path")


def _same_path(a: str, b: str) -> bool:
    return os.path.normpath(a) == os.path.normpath(b)


class DeviceController:
    """Controls the encrypted disk that holds the snapshots."""

    def __init__(
        self,
        mount_location: str,
        retry_attempts: int = 10,
        retry_delay: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.mount_location = mount_location
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self._sleep = sleep

    def unlock(self, disk: str, passphrase: str) -> str:
        """Unlock ``disk`` and return the clear device path.

        The passphrase is fed through stdin as the key file.
        """
        logger.info("Unlocking drive...")
        result = __util__.exec_subprocess(
            [
                "udisksctl",
                "unlock",
                "--no-user-interaction",
                "-b",
                disk,
                "--key-file",
                "/dev/stdin",
            ],
            input=passphrase.encode("utf-8"),
            capture_output=True,
        )
        if result.returncode != 0:
            raise UnlockError(
                f"Unlocking {disk} failed: "
                f"{__util__.decode_output(result.stderr).strip()}"
            )
        try:
            handle = parse_unlock_output(__util__.decode_output(result.stdout))
        except UnlockError as e:
            raise UnlockError(str(e), unlocked=True) from e
        logger.debug("Unlocked %s as %s", disk, handle)
        return handle

    def mount(self, handle: str) -> Path:
        """Mount the clear device and check it landed at the configured path."""
        result = __util__.exec_subprocess(
            ["udisksctl", "mount", "--no-user-interaction", "-b", handle],
            stdin=subprocess.DEVNULL,
            capture_output=True,
        )
        if result.returncode != 0:
            raise MountError(
                f"Mounting {handle} failed: "
                f"{__util__.decode_output(result.stderr).strip()}"
            )
        path = parse_mount_output(__util__.decode_output(result.stdout))
        if not _same_path(path, self.mount_location):
            raise MountError(
                f"Backup drive mounted at unexpected location {path}, "
                f"expected {self.mount_location}"
            )
        logger.info("Mounted backup drive at %s", path)
        return Path(path)

    def unmount(self, handle: str | None) -> bool:
        """Unmount the clear device, retrying; never raises."""
        if not handle:
            return True
        logger.info("Unmounting backup device...")
        return __util__.retry(
            lambda: self._attempt(["umount", handle]),
            self.retry_attempts,
            self.retry_delay,
            "Unmount",
            sleep=self._sleep,
        )

    def lock(self, disk: str, unlocked: bool) -> bool:
        """Lock the backup disk if this run unlocked it, retrying; never raises."""
        if not unlocked:
            return True
        logger.info("Locking backup device...")
        return __util__.retry(
            lambda: self._attempt(
                ["udisksctl", "lock", "--no-user-interaction", "-b", disk]
            ),
            self.retry_attempts,
            self.retry_delay,
            "Lock",
            sleep=self._sleep,
        )

    @staticmethod
    def _attempt(command: list[str]) -> bool:
        try:
            result = __util__.exec_subprocess(
                command, stdin=subprocess.DEVNULL, capture_output=True
            )
        except AbortError as e:
            logger.warning("%s", e)
            return False
        if result.returncode != 0:
            logger.warning(
                "%s: %s", command[0], __util__.decode_output(result.stderr).strip()
            )
            return False
        return True
