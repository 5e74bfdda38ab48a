"""Tests for the backup pipeline state machine."""

import os
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from escrow_backup.__util__ import AbortError
from escrow_backup.core.archive import SnapshotArchiver
from escrow_backup.core.encrypt import DecryptVerifyError, Encryptor
from escrow_backup.core.pipeline import Pipeline, PipelineState, RunResult
from escrow_backup.core.upload import RemoteUploader, VerifyMismatchError
from escrow_backup.device import DeviceController, MountError, UnlockError
from escrow_backup.secretstore import ConflictError, SecretStore, Session

SESSION = Session(token="token-123")


class Harness:
    """Pipeline collaborators as mocks that touch real staging files."""

    def __init__(self, config):
        self.config = config
        self.staging = Path(config.backup.staging_location)

        self.secret_store = MagicMock(spec=SecretStore)
        self.secret_store.login.return_value = SESSION
        self.secret_store.retrieve_item.return_value = "diskpw"

        self.devices = MagicMock(spec=DeviceController)
        self.devices.unlock.return_value = "/dev/dm-3"
        self.devices.mount.return_value = Path(config.backup.mount_location)

        self.archiver = MagicMock(spec=SnapshotArchiver)
        self.archiver.find_latest.return_value = "snap-2"
        self.archiver.compress.side_effect = self._compress

        self.encryptor = MagicMock(spec=Encryptor)
        self.encryptor.encrypt.side_effect = self._encrypt

        self.uploader = MagicMock(spec=RemoteUploader)
        self.uploader.upload.side_effect = lambda local, dest: f"{dest}/{local.name}"

    def _compress(self, ref, source, staging):
        target = Path(staging) / f"{ref}.tar.gz"
        target.write_bytes(b"tarball")
        return target

    def _encrypt(self, session, ref, archive):
        output = Path(f"{archive}.gpg")
        output.write_bytes(b"encrypted")
        return output

    def pipeline(self):
        return Pipeline(
            self.config,
            secret_store=self.secret_store,
            devices=self.devices,
            archiver=self.archiver,
            encryptor=self.encryptor,
            uploader=self.uploader,
        )

    def staged_files(self):
        return sorted(p.name for p in self.staging.iterdir())

    def assert_cleaned_up_once(self):
        assert self.secret_store.logout.call_count == 1
        assert self.devices.unmount.call_count == 1
        assert self.devices.lock.call_count == 1


@pytest.fixture
def harness(run_config):
    return Harness(run_config)


class TestSuccessfulRun:
    """Tests for a run where every stage succeeds."""

    def test_reaches_done(self, harness):
        result = harness.pipeline().run()

        assert isinstance(result, RunResult)
        assert result.succeeded
        assert result.state is PipelineState.DONE
        assert result.reached is PipelineState.ENCRYPTED_PURGED
        assert result.snapshot == "snap-2"
        assert result.remote_key == "remote:backups/snap-2.tar.gz.gpg"
        assert result.secret_name == "Backup snap-2"
        assert result.failed_stage is None
        assert result.error is None

    def test_no_local_artifacts_left(self, harness):
        harness.pipeline().run()
        assert harness.staged_files() == []

    def test_cleanup_runs_once_with_acquired_resources(self, harness, run_config):
        harness.pipeline().run()

        harness.assert_cleaned_up_once()
        harness.secret_store.logout.assert_called_once_with(SESSION)
        harness.devices.unmount.assert_called_once_with("/dev/dm-3")
        harness.devices.lock.assert_called_once_with("/dev/sdb1", True)

    def test_disk_passphrase_from_vault(self, harness):
        harness.pipeline().run()

        harness.secret_store.retrieve_item.assert_called_once_with(SESSION, "disk-item")
        harness.devices.unlock.assert_called_once_with("/dev/sdb1", "diskpw")
        harness.devices.mount.assert_called_once_with("/dev/dm-3")

    def test_stage_arguments(self, harness, run_config):
        harness.pipeline().run()

        staging = harness.staging
        harness.archiver.find_latest.assert_called_once_with(
            run_config.backup.snapshot_location
        )
        harness.archiver.compress.assert_called_once_with(
            "snap-2", run_config.backup.snapshot_location, run_config.backup.staging_location
        )
        harness.encryptor.encrypt.assert_called_once_with(
            SESSION, "snap-2", staging / "snap-2.tar.gz"
        )
        harness.encryptor.verify.assert_called_once_with(
            SESSION, "snap-2", staging / "snap-2.tar.gz.gpg"
        )
        harness.uploader.upload.assert_called_once_with(
            staging / "snap-2.tar.gz.gpg", "remote:backups"
        )
        harness.uploader.verify.assert_called_once_with(
            staging / "snap-2.tar.gz.gpg", "remote:backups/snap-2.tar.gz.gpg"
        )

    def test_stage_order(self, harness):
        order = []
        manager = MagicMock()
        for name, mock in (
            ("secret_store", harness.secret_store),
            ("devices", harness.devices),
            ("archiver", harness.archiver),
            ("encryptor", harness.encryptor),
            ("uploader", harness.uploader),
        ):
            manager.attach_mock(mock, name)

        harness.pipeline().run()

        for call in manager.mock_calls:
            name = call[0]
            if "__" not in name and name not in order:
                order.append(name)
        assert order == [
            "secret_store.login",
            "secret_store.retrieve_item",
            "devices.unlock",
            "devices.mount",
            "archiver.create_snapshot",
            "archiver.find_latest",
            "archiver.compress",
            "encryptor.encrypt",
            "encryptor.verify",
            "uploader.upload",
            "uploader.verify",
            "secret_store.logout",
            "devices.unmount",
            "devices.lock",
        ]

    def test_latest_snapshot_is_backed_up(self, run_config):
        """Test a real archiver picks the newest snapshot by mtime."""
        harness = Harness(run_config)
        source = Path(run_config.backup.snapshot_location)
        for name, mtime in (("snap-1", 1_000_000), ("snap-2", 2_000_000)):
            (source / name).mkdir()
            os.utime(source / name, (mtime, mtime))
        real = SnapshotArchiver(["true"])
        harness.archiver.find_latest.side_effect = real.find_latest

        result = harness.pipeline().run()

        assert result.secret_name == "Backup snap-2"
        assert result.remote_key.endswith("/snap-2.tar.gz.gpg")


FAILURES = [
    (PipelineState.LOGGED_IN, "secret_store", "login", PipelineState.INIT),
    (PipelineState.UNLOCKED, "secret_store", "retrieve_item", PipelineState.LOGGED_IN),
    (PipelineState.UNLOCKED, "devices", "unlock", PipelineState.LOGGED_IN),
    (PipelineState.MOUNTED, "devices", "mount", PipelineState.UNLOCKED),
    (PipelineState.SNAPSHOT_TAKEN, "archiver", "create_snapshot", PipelineState.MOUNTED),
    (PipelineState.SNAPSHOT_TAKEN, "archiver", "find_latest", PipelineState.MOUNTED),
    (PipelineState.COMPRESSED, "archiver", "compress", PipelineState.SNAPSHOT_TAKEN),
    (PipelineState.ENCRYPTED, "encryptor", "encrypt", PipelineState.COMPRESSED),
    (PipelineState.DECRYPT_VERIFIED, "encryptor", "verify", PipelineState.ENCRYPTED),
    (PipelineState.UPLOADED, "uploader", "upload", PipelineState.PLAINTEXT_PURGED),
    (PipelineState.UPLOAD_VERIFIED, "uploader", "verify", PipelineState.UPLOADED),
]


class TestFailures:
    """Tests for runs that abort part way."""

    @pytest.mark.parametrize(("failed", "component", "method", "reached"), FAILURES)
    def test_abort_at_every_stage(self, harness, failed, component, method, reached):
        error = AbortError(f"{method} broke")
        getattr(getattr(harness, component), method).side_effect = error

        result = harness.pipeline().run()

        assert not result.succeeded
        assert result.state is PipelineState.ABORTED
        assert result.failed_stage is failed
        assert result.reached is reached
        assert result.error is error
        harness.assert_cleaned_up_once()

    def test_login_failure_has_nothing_to_release(self, harness):
        harness.secret_store.login.side_effect = AbortError("bad credentials")

        harness.pipeline().run()

        harness.secret_store.logout.assert_called_once_with(None)
        harness.devices.unmount.assert_called_once_with(None)
        harness.devices.lock.assert_called_once_with("/dev/sdb1", False)
        harness.devices.unlock.assert_not_called()

    def test_mount_mismatch_stops_before_snapshot(self, harness):
        harness.devices.mount.side_effect = MountError("unexpected location")

        result = harness.pipeline().run()

        assert result.failed_stage is PipelineState.MOUNTED
        harness.archiver.create_snapshot.assert_not_called()
        harness.devices.unmount.assert_called_once_with("/dev/dm-3")
        harness.devices.lock.assert_called_once_with("/dev/sdb1", True)

    def test_conflict_stops_before_encryption(self, harness):
        """Test a passphrase name clash leaves only the tarball behind."""
        harness.encryptor.encrypt.side_effect = ConflictError("already exists")

        result = harness.pipeline().run()

        assert result.failed_stage is PipelineState.ENCRYPTED
        assert harness.staged_files() == ["snap-2.tar.gz"]
        harness.uploader.upload.assert_not_called()

    def test_plaintext_kept_until_decrypt_verified(self, harness):
        harness.encryptor.verify.side_effect = DecryptVerifyError("bad")

        harness.pipeline().run()

        assert harness.staged_files() == ["snap-2.tar.gz", "snap-2.tar.gz.gpg"]
        harness.uploader.upload.assert_not_called()

    def test_encrypted_kept_until_upload_verified(self, harness):
        harness.uploader.verify.side_effect = VerifyMismatchError("differs")

        result = harness.pipeline().run()

        assert harness.staged_files() == ["snap-2.tar.gz.gpg"]
        assert result.reached is PipelineState.UPLOADED
        assert result.remote_key == "remote:backups/snap-2.tar.gz.gpg"

    def test_purge_failure_aborts(self, harness):
        def compress_elsewhere(ref, source, staging):
            return Path(staging) / "missing.tar.gz"

        harness.archiver.compress.side_effect = compress_elsewhere
        harness.encryptor.encrypt.side_effect = lambda s, r, a: Path(f"{a}.gpg")

        result = harness.pipeline().run()

        assert result.failed_stage is PipelineState.PLAINTEXT_PURGED
        assert "Could not remove" in str(result.error)

    def test_unexpected_exception_still_cleans_up(self, harness):
        harness.archiver.compress.side_effect = RuntimeError("bug")

        result = harness.pipeline().run()

        assert result.state is PipelineState.ABORTED
        assert isinstance(result.error, RuntimeError)
        harness.assert_cleaned_up_once()

    def test_keyboard_interrupt_cleans_up_and_propagates(self, harness):
        harness.archiver.compress.side_effect = KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            harness.pipeline().run()

        harness.assert_cleaned_up_once()
        harness.devices.unmount.assert_called_once_with("/dev/dm-3")


class TestCleanup:
    """Tests for the cleanup actions themselves."""

    def test_failing_logout_does_not_block_unmount_and_lock(self, harness):
        harness.secret_store.logout.side_effect = AbortError("logout broke")
        harness.uploader.verify.side_effect = VerifyMismatchError("differs")

        harness.pipeline().run()

        harness.devices.unmount.assert_called_once_with("/dev/dm-3")
        harness.devices.lock.assert_called_once_with("/dev/sdb1", True)

    def test_failing_unmount_does_not_block_lock(self, harness):
        harness.devices.unmount.side_effect = RuntimeError("unmount broke")

        result = harness.pipeline().run()

        assert result.succeeded
        harness.devices.lock.assert_called_once()

    def test_cleanup_errors_do_not_replace_stage_error(self, harness):
        stage_error = AbortError("upload broke")
        harness.uploader.upload.side_effect = stage_error
        harness.devices.lock.side_effect = RuntimeError("lock broke")

        result = harness.pipeline().run()

        assert result.error is stage_error

    def test_interrupted_unmount_does_not_block_lock(self, harness):
        """Test an interrupt during cleanup is raised only after the lock."""
        harness.devices.unmount.side_effect = KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            harness.pipeline().run()

        harness.devices.lock.assert_called_once_with("/dev/sdb1", True)

    def test_interrupted_logout_does_not_block_unmount_and_lock(self, harness):
        harness.secret_store.logout.side_effect = KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            harness.pipeline().run()

        harness.assert_cleaned_up_once()
        harness.devices.unmount.assert_called_once_with("/dev/dm-3")

    def test_first_interrupt_is_the_one_raised(self, harness):
        first = KeyboardInterrupt("first")
        harness.devices.unmount.side_effect = first
        harness.devices.lock.side_effect = SystemExit(1)

        with pytest.raises(KeyboardInterrupt) as exc_info:
            harness.pipeline().run()

        assert exc_info.value is first

    def test_lock_after_unlock_with_unreadable_output(self, harness):
        harness.devices.unlock.side_effect = UnlockError(
            "Unexpected output from unlock", unlocked=True
        )

        result = harness.pipeline().run()

        assert result.failed_stage is PipelineState.UNLOCKED
        harness.devices.mount.assert_not_called()
        harness.devices.unmount.assert_called_once_with(None)
        harness.devices.lock.assert_called_once_with("/dev/sdb1", True)

    def test_no_lock_after_failed_unlock(self, harness):
        harness.devices.unlock.side_effect = UnlockError("Wrong passphrase")

        harness.pipeline().run()

        harness.devices.lock.assert_called_once_with("/dev/sdb1", False)

    def test_default_collaborators_from_config(self, run_config):
        pipeline = Pipeline(run_config)

        assert pipeline.secret_store.cli_path == "bw"
        assert pipeline.devices.mount_location == run_config.backup.mount_location
        assert pipeline.devices.retry_attempts == 2
        assert pipeline.encryptor.secret_store is pipeline.secret_store
        assert pipeline.encryptor.passphrase_length == 24
        assert pipeline.uploader.config_path == "/etc/rclone.conf"
