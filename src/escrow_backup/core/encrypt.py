"""Symmetric encryption of the backup tarball with gpg.

Each run encrypts with a fresh random passphrase. The passphrase is stored
in the vault before gpg is started; a backup whose key was never escrowed
cannot be restored, so encryption does not happen without it. The
passphrase reaches gpg on stdin and is never written anywhere else.
"""

import logging
from pathlib import Path

from .. import __util__, secret_name_for
from ..__util__ import AbortError
from ..passphrase import generate_passphrase
from ..secretstore import SecretStore, Session

logger = logging.getLogger(__name__)

ENCRYPTED_SUFFIX = ".gpg"
CIPHER_ALGO = "AES256"

# Passphrase on fd 0, never cached by gpg-agent
GPG_BASE_COMMAND = [
    "gpg",
    "--batch",
    "--yes",
    "--pinentry-mode",
    "loopback",
    "--passphrase-fd",
    "0",
    "--no-symkey-cache",
]


class EncryptError(AbortError):
    """gpg failed to encrypt the tarball."""

    pass


class DecryptVerifyError(AbortError):
    """The encrypted file could not be decrypted with the escrowed passphrase."""

    pass


def encrypted_path(input_file: Path | str) -> Path:
    return Path(f"{input_file}{ENCRYPTED_SUFFIX}")


class Encryptor:
    """Encrypts tarballs and escrows their passphrases."""

    def __init__(
        self,
        secret_store: SecretStore,
        folder_name: str,
        passphrase_length: int,
        passphrase_charset: str,
    ) -> None:
        self.secret_store = secret_store
        self.folder_name = folder_name
        self.passphrase_length = passphrase_length
        self.passphrase_charset = passphrase_charset

    def encrypt(self, session: Session, ref: str, input_file: Path) -> Path:
        """Escrow a new passphrase for ``ref`` and encrypt ``input_file`` with it.

        Returns:
            Path of the encrypted file (``input_file`` + ``.gpg``)
        """
        name = secret_name_for(ref)
        logger.info("Generating passphrase to vault...")
        passphrase = generate_passphrase(
            self.passphrase_length, self.passphrase_charset
        )
        folder_id = self.secret_store.resolve_folder(session, self.folder_name)
        self.secret_store.store_secret(
            session,
            name,
            passphrase,
            f"Passphrase for gpg encrypted backup taken at {ref}",
            folder_id,
        )

        output = encrypted_path(input_file)
        logger.info("Encrypting with passphrase stored in vault as '%s'...", name)
        command = GPG_BASE_COMMAND + [
            "--cipher-algo",
            CIPHER_ALGO,
            "--symmetric",
            "--output",
            str(output),
            str(input_file),
        ]
        try:
            result = __util__.exec_subprocess(
                command, input=passphrase.encode("utf-8"), capture_output=True
            )
        except BaseException:
            output.unlink(missing_ok=True)
            raise
        if result.returncode != 0:
            output.unlink(missing_ok=True)
            raise EncryptError(
                f"gpg exited with status {result.returncode}: "
                f"{__util__.decode_output(result.stderr).strip()}"
            )

        __util__.log_file_size(output)
        return output

    def verify(self, session: Session, ref: str, encrypted_file: Path) -> None:
        """Decrypt ``encrypted_file`` in full with the passphrase from the vault."""
        logger.info("Testing encrypted archive...")
        name = secret_name_for(ref)
        try:
            passphrase = self.secret_store.retrieve_secret(session, name)
        except AbortError as e:
            raise DecryptVerifyError(
                f"Cannot retrieve passphrase '{name}' from vault: {e}"
            ) from e

        command = GPG_BASE_COMMAND + [
            "--output",
            "/dev/null",
            "--decrypt",
            str(encrypted_file),
        ]
        result = __util__.exec_subprocess(
            command, input=passphrase.encode("utf-8"), capture_output=True
        )
        if result.returncode != 0:
            raise DecryptVerifyError(
                f"Decrypting {encrypted_file} failed: "
                f"{__util__.decode_output(result.stderr).strip()}"
            )
