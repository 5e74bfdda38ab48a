"""Run command: Execute the backup pipeline."""

import argparse
import contextlib
import logging
import os
import signal
from typing import Callable, Iterator

from filelock import FileLock, Timeout

from ..__logger__ import create_logger
from ..__util__ import AbortError
from ..config import Config, ConfigError, find_config_file, load_config
from ..core.archive import archive_path
from ..core.encrypt import encrypted_path
from ..core.pipeline import Pipeline
from ..core.upload import remote_key
from .common import get_log_level

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_CONFIG = 3
EXIT_PRIVILEGE = 4
EXIT_ALREADY_RUNNING = 5
EXIT_INTERRUPTED = 130


class PrivilegeError(AbortError):
    """Not running with root privileges."""

    pass


class AlreadyRunningError(AbortError):
    """Another instance holds the lock file."""

    pass


class Interrupted(KeyboardInterrupt):
    """The process received a termination signal; handled like Ctrl-C."""

    pass


def check_privileges(geteuid: Callable[[], int] = os.geteuid) -> None:
    """Unlocking disks and reading snapshots needs root."""
    if geteuid() != 0:
        raise PrivilegeError("escrow-backup run needs to be run as root")


@contextlib.contextmanager
def single_instance(lock_path: str) -> Iterator[FileLock]:
    """Hold an exclusive lock on ``lock_path`` or fail straight away."""
    lock = FileLock(lock_path, timeout=0)
    try:
        lock.acquire()
    except Timeout as e:
        raise AlreadyRunningError(f"Already running, aborting! ({lock_path})") from e
    except OSError as e:
        raise AbortError(f"Cannot create lock file {lock_path}: {e}") from e
    try:
        yield lock
    finally:
        lock.release()


def _raise_interrupted(signum, frame) -> None:
    # ignore repeats so the cleanup sequence is not cut short
    signal.signal(signum, signal.SIG_IGN)
    raise Interrupted(f"Received {signal.Signals(signum).name}")


@contextlib.contextmanager
def termination_handler() -> Iterator[None]:
    """Turn SIGTERM into an exception so cleanup code gets to run."""
    previous = signal.signal(signal.SIGTERM, _raise_interrupted)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def execute_run(args: argparse.Namespace) -> int:
    """Execute the run command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    # Initialize logger
    log_level = get_log_level(args)
    create_logger(log_level)

    # Find and load config
    try:
        config_path = find_config_file(getattr(args, "config", None))
        if config_path is None:
            logger.error("No configuration file found.")
            logger.error("Create one with: escrow-backup config init")
            return EXIT_CONFIG

        logger.info("Loading configuration from: %s", config_path)
        config, warnings = load_config(config_path)

        for warning in warnings:
            logger.warning("Config: %s", warning)

    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG

    if config.global_config.log_file:
        create_logger(log_level, log_file=config.global_config.log_file)

    # Dry run mode
    if getattr(args, "dry_run", False):
        return _dry_run(config)

    try:
        check_privileges()
        with single_instance(config.global_config.lock_file), termination_handler():
            result = Pipeline(config).run()
    except PrivilegeError as e:
        logger.error("%s", e)
        return EXIT_PRIVILEGE
    except AlreadyRunningError as e:
        logger.error("%s", e)
        return EXIT_ALREADY_RUNNING
    except AbortError as e:
        logger.error("%s", e)
        return EXIT_ABORTED
    except KeyboardInterrupt:
        logger.error("Interrupted, cleanup has been run")
        return EXIT_INTERRUPTED

    if result.succeeded:
        logger.info("Backup completed in %.1fs", result.duration_seconds)
        return EXIT_OK

    stage = result.failed_stage.value if result.failed_stage else "unknown"
    logger.error(
        "Backup aborted while reaching '%s' (last completed: '%s'): %s",
        stage,
        result.reached.value,
        result.error,
    )
    return EXIT_ABORTED


def _dry_run(config: Config) -> int:
    """Show what would be done without making changes."""
    example_ref = "<latest snapshot>"
    archive = archive_path(example_ref, config.backup.staging_location)
    encrypted = encrypted_path(archive)

    print("Dry run mode - showing what would be done:")
    print("")
    print(f"Vault login:     {config.vault.email} ({config.vault.cli_path})")
    print(f"Unlock device:   {config.backup.device_path}")
    print(f"Mount at:        {config.backup.mount_location}")
    print(f"Snapshot:        {' '.join(config.backup.snapshot_command)}")
    print(f"Latest from:     {config.backup.snapshot_location}")
    print(f"Compress to:     {archive}")
    print(f"Encrypt to:      {encrypted}")
    print(f"Passphrase:      vault folder '{config.vault.folder_name}'")
    print(f"Upload to:       {remote_key(encrypted, config.remote.destination)}")
    print("")
    print(
        "Cleanup: vault logout, unmount and lock "
        f"({config.backup.retry_attempts} attempts, {config.backup.retry_delay:g}s apart)"
    )

    return EXIT_OK
