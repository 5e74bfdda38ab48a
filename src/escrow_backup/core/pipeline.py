"""The backup pipeline: one snapshot, one archive, one encrypted upload.

Stages run strictly one after the other, every stage is a barrier for the
next. The run state (vault session, clear device handle, artifact paths)
lives in a single RunState owned by the pipeline and is handed to each
stage explicitly.

Cleanup (vault logout, unmount, lock) is armed before the first stage and
runs on every way out of run(), including interrupts. Each cleanup action
is independent of the others.
"""

import contextlib
import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

from .. import __util__, secret_name_for
from ..__util__ import AbortError
from ..config import Config
from ..device import DeviceController, UnlockError
from ..secretstore import SecretStore, Session
from .archive import SnapshotArchiver
from .encrypt import Encryptor
from .upload import RemoteUploader

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    """Pipeline states, in the order they are reached."""

    INIT = "init"
    LOGGED_IN = "logged_in"
    UNLOCKED = "unlocked"
    MOUNTED = "mounted"
    SNAPSHOT_TAKEN = "snapshot_taken"
    COMPRESSED = "compressed"
    ENCRYPTED = "encrypted"
    DECRYPT_VERIFIED = "decrypt_verified"
    PLAINTEXT_PURGED = "plaintext_purged"
    UPLOADED = "uploaded"
    UPLOAD_VERIFIED = "upload_verified"
    ENCRYPTED_PURGED = "encrypted_purged"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class RunState:
    """Mutable state of a single run."""

    state: PipelineState = PipelineState.INIT
    session: Session | None = None
    device_handle: str | None = None
    disk_unlocked: bool = False
    snapshot: str | None = None
    archive: Path | None = None
    encrypted: Path | None = None
    remote_key: str | None = None


@dataclass
class RunResult:
    """Outcome of a run.

    Attributes:
        state: DONE or ABORTED
        reached: Last state successfully reached
        failed_stage: State the run was trying to reach when it failed
        error: The error that aborted the run
    """

    state: PipelineState
    reached: PipelineState
    snapshot: str | None = None
    remote_key: str | None = None
    failed_stage: PipelineState | None = None
    error: Exception | None = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state is PipelineState.DONE

    @property
    def secret_name(self) -> str | None:
        return secret_name_for(self.snapshot) if self.snapshot else None


class Pipeline:
    """Drives a backup run from vault login to the verified upload."""

    def __init__(
        self,
        config: Config,
        secret_store: SecretStore | None = None,
        devices: DeviceController | None = None,
        archiver: SnapshotArchiver | None = None,
        encryptor: Encryptor | None = None,
        uploader: RemoteUploader | None = None,
    ) -> None:
        self.config = config
        self.secret_store = secret_store or SecretStore(config.vault.cli_path)
        self.devices = devices or DeviceController(
            config.backup.mount_location,
            retry_attempts=config.backup.retry_attempts,
            retry_delay=config.backup.retry_delay,
        )
        self.archiver = archiver or SnapshotArchiver(config.backup.snapshot_command)
        self.encryptor = encryptor or Encryptor(
            self.secret_store,
            config.vault.folder_name,
            config.encrypt.passphrase_length,
            config.encrypt.passphrase_charset,
        )
        self.uploader = uploader or RemoteUploader(
            config.remote.config, cli_path=config.remote.cli_path
        )

    def stages(self) -> list[tuple[PipelineState, Callable[[RunState], None]]]:
        """Return the ordered (target state, stage function) pairs."""
        return [
            (PipelineState.LOGGED_IN, self._login),
            (PipelineState.UNLOCKED, self._unlock),
            (PipelineState.MOUNTED, self._mount),
            (PipelineState.SNAPSHOT_TAKEN, self._snapshot),
            (PipelineState.COMPRESSED, self._compress),
            (PipelineState.ENCRYPTED, self._encrypt),
            (PipelineState.DECRYPT_VERIFIED, self._verify_encrypted),
            (PipelineState.PLAINTEXT_PURGED, self._purge_plaintext),
            (PipelineState.UPLOADED, self._upload),
            (PipelineState.UPLOAD_VERIFIED, self._verify_upload),
            (PipelineState.ENCRYPTED_PURGED, self._purge_encrypted),
        ]

    def run(self) -> RunResult:
        """Execute all stages; never raises for stage failures.

        KeyboardInterrupt and SystemExit propagate once cleanup has run.
        """
        state = RunState()
        started = time.monotonic()
        current = PipelineState.INIT
        logger.info(__util__.log_heading(f"Started at {time.ctime()}"))

        try:
            with self.cleanup_on_exit(state):
                for target, stage in self.stages():
                    current = target
                    stage(state)
                    state.state = target
                    logger.debug("Reached state %s", target.value)
        except AbortError as e:
            logger.error("Stage %s failed: %s", current.value, e)
            return self._result(state, started, current, e)
        except Exception as e:
            logger.exception("Unexpected error in stage %s: %s", current.value, e)
            return self._result(state, started, current, e)

        logger.info(__util__.log_heading(f"Finished at {time.ctime()}"))
        logger.info(
            "Encrypted file has been uploaded and verified, passphrase is stored "
            "in your vault as '%s' in folder '%s'.",
            secret_name_for(state.snapshot or ""),
            self.config.vault.folder_name,
        )
        return RunResult(
            state=PipelineState.DONE,
            reached=state.state,
            snapshot=state.snapshot,
            remote_key=state.remote_key,
            duration_seconds=time.monotonic() - started,
        )

    @staticmethod
    def _result(
        state: RunState, started: float, failed: PipelineState, error: Exception
    ) -> RunResult:
        return RunResult(
            state=PipelineState.ABORTED,
            reached=state.state,
            snapshot=state.snapshot,
            remote_key=state.remote_key,
            failed_stage=failed,
            error=error,
            duration_seconds=time.monotonic() - started,
        )

    @contextlib.contextmanager
    def cleanup_on_exit(self, state: RunState) -> Iterator[RunState]:
        """Guarantee cleanup() for everything that happens inside the block."""
        try:
            yield state
        finally:
            self.cleanup(state)

    def cleanup(self, state: RunState) -> None:
        """Log out, unmount and lock; a failing action does not stop the rest.

        An interrupt arriving during one action is held back until every
        action has had its turn, then re-raised.
        """
        actions = [
            ("logout", lambda: self.secret_store.logout(state.session)),
            ("unmount", lambda: self.devices.unmount(state.device_handle)),
            (
                "lock",
                lambda: self.devices.lock(
                    self.config.backup.device_path, state.disk_unlocked
                ),
            ),
        ]
        interrupt: BaseException | None = None
        for name, action in actions:
            try:
                action()
            except Exception as e:
                logger.error("Cleanup action %s failed: %s", name, e)
            except (KeyboardInterrupt, SystemExit) as e:
                logger.error("Cleanup action %s interrupted, continuing cleanup", name)
                if interrupt is None:
                    interrupt = e
        if interrupt is not None:
            raise interrupt

    # Stages

    def _login(self, state: RunState) -> None:
        state.session = self.secret_store.login(self.config.vault.email)

    def _unlock(self, state: RunState) -> None:
        logger.info("Getting drive passphrase from vault...")
        passphrase = self.secret_store.retrieve_item(
            self._session(state), self.config.vault.disk_unlock_item_id
        )
        try:
            state.device_handle = self.devices.unlock(
                self.config.backup.device_path, passphrase
            )
        except UnlockError as e:
            state.disk_unlocked = e.unlocked
            raise
        state.disk_unlocked = True

    def _mount(self, state: RunState) -> None:
        self.devices.mount(_require(state.device_handle, "device handle"))

    def _snapshot(self, state: RunState) -> None:
        self.archiver.create_snapshot()
        state.snapshot = self.archiver.find_latest(self.config.backup.snapshot_location)

    def _compress(self, state: RunState) -> None:
        state.archive = self.archiver.compress(
            _require(state.snapshot, "snapshot"),
            self.config.backup.snapshot_location,
            self.config.backup.staging_location,
        )

    def _encrypt(self, state: RunState) -> None:
        state.encrypted = self.encryptor.encrypt(
            self._session(state),
            _require(state.snapshot, "snapshot"),
            _require(state.archive, "archive"),
        )

    def _verify_encrypted(self, state: RunState) -> None:
        self.encryptor.verify(
            self._session(state),
            _require(state.snapshot, "snapshot"),
            _require(state.encrypted, "encrypted file"),
        )

    def _purge_plaintext(self, state: RunState) -> None:
        _remove(_require(state.archive, "archive"))

    def _upload(self, state: RunState) -> None:
        state.remote_key = self.uploader.upload(
            _require(state.encrypted, "encrypted file"),
            self.config.remote.destination,
        )

    def _verify_upload(self, state: RunState) -> None:
        self.uploader.verify(
            _require(state.encrypted, "encrypted file"),
            _require(state.remote_key, "remote key"),
        )

    def _purge_encrypted(self, state: RunState) -> None:
        _remove(_require(state.encrypted, "encrypted file"))

    @staticmethod
    def _session(state: RunState) -> Session:
        return _require(state.session, "vault session")


def _require(value, what: str):
    if value is None:
        raise AbortError(f"No {what} available at this stage")
    return value


def _remove(path: Path) -> None:
    logger.info("Removing %s", path)
    try:
        Path(path).unlink()
    except OSError as e:
        raise AbortError(f"Could not remove {path}: {e}") from e
