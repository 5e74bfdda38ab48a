"""Upload to remote storage with rclone, then read it back and compare."""

import logging
import subprocess
import tempfile
from pathlib import Path

from .. import __util__
from ..__util__ import AbortError

logger = logging.getLogger(__name__)

COMPARE_CHUNK_SIZE = 1024 * 1024


class UploadError(AbortError):
    """Copying the file to the remote failed."""

    pass


class VerifyMismatchError(AbortError):
    """The remote copy differs from the local file or cannot be read."""

    pass


def remote_key(local_file: Path | str, destination: str) -> str:
    """Return the remote path ``local_file`` is uploaded to."""
    name = Path(local_file).name
    if destination.endswith((":", "/")):
        return f"{destination}{name}"
    return f"{destination}/{name}"


class RemoteUploader:
    """Puts files on an rclone remote and checks them afterwards."""

    def __init__(self, config_path: str, cli_path: str = "rclone") -> None:
        self.config_path = config_path
        self.cli_path = cli_path

    def _command(self, *args: str) -> list[str]:
        return [self.cli_path, "--config", self.config_path, *args]

    def upload(self, local_file: Path, destination: str) -> str:
        """Copy ``local_file`` into ``destination`` and return its remote key."""
        key = remote_key(local_file, destination)
        logger.info("Uploading encrypted file...")
        result = __util__.exec_subprocess(
            self._command("copyto", str(local_file), key),
            stdin=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
        if result.returncode != 0:
            raise UploadError(
                f"rclone copyto {key} exited with status {result.returncode}: "
                f"{__util__.decode_output(result.stderr).strip()}"
            )
        logger.debug("Uploaded %s to %s", local_file, key)
        return key

    def verify(self, local_file: Path, key: str) -> None:
        """Stream ``key`` back from the remote and compare it byte for byte."""
        logger.info("Verifying uploaded file...")
        mismatch_at = None
        offset = 0
        # stderr is spooled to a file, a full pipe would stall rclone
        with tempfile.TemporaryFile() as errors:
            proc = __util__.exec_subprocess(
                self._command("cat", key),
                method="Popen",
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=errors,
            )
            with proc, open(local_file, "rb") as local:
                while True:
                    remote_chunk = proc.stdout.read(COMPARE_CHUNK_SIZE)
                    local_chunk = local.read(COMPARE_CHUNK_SIZE)
                    if remote_chunk != local_chunk:
                        mismatch_at = offset + _common_prefix(
                            remote_chunk, local_chunk
                        )
                        proc.kill()
                        break
                    if not remote_chunk:
                        break
                    offset += len(remote_chunk)
                returncode = proc.wait()
            errors.seek(0)
            stderr = __util__.decode_output(errors.read()).strip()

        if mismatch_at is not None:
            raise VerifyMismatchError(
                f"Remote file {key} differs from {local_file} at byte {mismatch_at}"
            )
        if returncode != 0:
            raise VerifyMismatchError(
                f"Reading back {key} failed with status {returncode}: {stderr}"
            )
        logger.info("Remote copy matches local file (%s)", __util__.format_size(offset))


def _common_prefix(a: bytes, b: bytes) -> int:
    for i, (x, y) in enumerate(zip(a, b)):
        if x != y:
            return i
    return min(len(a), len(b))
