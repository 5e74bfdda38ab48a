# pyright: standard

"""escrow-backup: escrow_backup/__util__.py
Common utility code shared between modules.
"""

import logging
import subprocess
import time
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

SIZE_UNITS = ["B", "K", "M", "G", "T", "P"]


class AbortError(Exception):
    """Raised when a backup run has to be aborted."""

    pass


class NotFoundError(AbortError):
    """A snapshot or a vault item that should exist could not be found."""

    pass


def log_heading(caption: str) -> str:
    """Formatted heading for logging output sections."""
    return f"--[ {caption} ]--"


def exec_subprocess(command, method="run", **kwargs):
    """Run ``command`` and return the CompletedProcess (or Popen object).

    The exit status is not checked here, callers decide what a nonzero
    exit means for their stage. Only a missing or non-executable binary
    raises, since no caller can do anything sensible with it.
    """
    logger.debug("Executing: %s", command)
    try:
        if method == "Popen":
            return subprocess.Popen(command, **kwargs)
        return subprocess.run(command, **kwargs)
    except (FileNotFoundError, PermissionError) as e:
        raise AbortError(f"Cannot execute {command[0]!r}: {e}") from e


def decode_output(data) -> str:
    """Decode subprocess output which may be bytes, str or None."""
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def retry(
    action: Callable[[], bool],
    attempts: int,
    delay: float,
    description: str,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Call ``action`` until it returns True or ``attempts`` are used up.

    Waits a fixed ``delay`` seconds between attempts.

    Returns:
        True if one of the attempts succeeded
    """
    for attempt in range(1, attempts + 1):
        if action():
            return True
        if attempt < attempts:
            logger.warning(
                "%s failed (attempt %d/%d), trying again in %gs",
                description,
                attempt,
                attempts,
                delay,
            )
            sleep(delay)
    logger.error("%s failed after %d attempts, giving up", description, attempts)
    return False


def format_size(num_bytes: int) -> str:
    """Human readable size, similar to ``du -h``."""
    size = float(num_bytes)
    for unit in SIZE_UNITS:
        if size < 1024 or unit == SIZE_UNITS[-1]:
            if unit == "B":
                return f"{int(size)}{unit}"
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{num_bytes}B"


def log_file_size(path: Path) -> None:
    """Log the size of ``path`` in human readable form."""
    try:
        logger.info("%s\t%s", format_size(Path(path).stat().st_size), path)
    except OSError as e:
        logger.warning("Could not determine size of %s: %s", path, e)
