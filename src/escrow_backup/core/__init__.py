"""Core backup stages for escrow-backup.

Each stage lives in its own module; pipeline sequences them.
"""

from .archive import CorruptArchiveError, SnapshotArchiver, SnapshotError
from .encrypt import DecryptVerifyError, EncryptError, Encryptor
from .pipeline import Pipeline, PipelineState, RunResult, RunState
from .upload import RemoteUploader, UploadError, VerifyMismatchError

__all__ = [
    "SnapshotArchiver",
    "Encryptor",
    "RemoteUploader",
    "Pipeline",
    "PipelineState",
    "RunResult",
    "RunState",
    "SnapshotError",
    "CorruptArchiveError",
    "EncryptError",
    "DecryptVerifyError",
    "UploadError",
    "VerifyMismatchError",
]
