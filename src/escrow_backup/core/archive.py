"""Snapshot creation and archiving.

Creates a snapshot with the configured snapshot tool, picks the newest
snapshot in the snapshot directory and turns it into a gzip compressed
tarball in the staging directory. Every tarball is read back in full
before it is handed on, whether it was just written or left over from an
earlier run.
"""

import logging
import subprocess
import tarfile
import zlib
from pathlib import Path
from typing import Sequence

from .. import __util__
from ..__util__ import AbortError, NotFoundError

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
READ_CHUNK_SIZE = 1024 * 1024


class SnapshotError(AbortError):
    """Creating the snapshot or its tarball failed."""

    pass


class CorruptArchiveError(AbortError):
    """The tarball could not be read back completely."""

    pass


def archive_path(ref: str, staging_dir: Path | str) -> Path:
    """Return where the tarball for snapshot ``ref`` lives."""
    return Path(staging_dir) / f"{ref}{ARCHIVE_SUFFIX}"


def check_archive(path: Path) -> None:
    """Stream through every member of the tarball at ``path``.

    Raises:
        CorruptArchiveError: on any read, decompression or format error
    """
    logger.info("Testing compressed archive...")
    members = 0
    try:
        with tarfile.open(path, "r|gz") as tar:
            for member in tar:
                members += 1
                if not member.isfile():
                    continue
                stream = tar.extractfile(member)
                if stream is None:
                    continue
                while stream.read(READ_CHUNK_SIZE):
                    pass
    except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
        raise CorruptArchiveError(f"Archive {path} failed integrity test: {e}") from e
    logger.debug("Read %d member(s) from %s", members, path)


class SnapshotArchiver:
    """Creates snapshots and compresses the latest one."""

    def __init__(self, snapshot_command: Sequence[str]) -> None:
        self.snapshot_command = list(snapshot_command)

    def create_snapshot(self) -> None:
        """Run the snapshot tool and wait for it to finish."""
        logger.info("Creating snapshot...")
        result = __util__.exec_subprocess(
            self.snapshot_command, stdin=subprocess.DEVNULL
        )
        if result.returncode != 0:
            raise SnapshotError(
                f"{self.snapshot_command[0]} exited with status {result.returncode}"
            )

    def find_latest(self, source_dir: Path | str) -> str:
        """Return the name of the most recently modified entry in ``source_dir``."""
        source = Path(source_dir)
        if not source.is_dir():
            raise NotFoundError(f"Snapshot location {source} is not a directory")

        entries = sorted(
            source.iterdir(), key=lambda p: (p.lstat().st_mtime, p.name)
        )
        if not entries:
            raise NotFoundError(f"No snapshots found in {source}")

        latest = entries[-1].name
        logger.info("Latest snapshot: %s", latest)
        return latest

    def compress(
        self, ref: str, source_dir: Path | str, staging_dir: Path | str
    ) -> Path:
        """Compress snapshot ``ref`` into the staging directory.

        An existing tarball with the expected name is reused as is, which
        lets an interrupted run pick up where it left off. It still has to
        pass the read-through test.
        """
        target = archive_path(ref, staging_dir)
        if target.exists():
            logger.info("Found target compressed file %s, skipping compression.", target)
        else:
            target.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            logger.info("Compressing to %s...", target)
            self._tar(ref, Path(source_dir), target)

        __util__.log_file_size(target)
        check_archive(target)
        return target

    @staticmethod
    def _tar(ref: str, source_dir: Path, target: Path) -> None:
        command = ["tar", "-zcf", str(target), "-C", str(source_dir), ref]
        try:
            result = __util__.exec_subprocess(
                command, stdin=subprocess.DEVNULL, stderr=subprocess.PIPE
            )
        except BaseException:
            # a half written tarball would be picked up by the next run
            target.unlink(missing_ok=True)
            raise
        if result.returncode != 0:
            target.unlink(missing_ok=True)
            raise SnapshotError(
                f"tar exited with status {result.returncode}: "
                f"{__util__.decode_output(result.stderr).strip()}"
            )
