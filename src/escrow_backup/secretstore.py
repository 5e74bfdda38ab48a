# pyright: standard

"""escrow-backup: escrow_backup/secretstore.py
Typed wrapper around the Bitwarden CLI.

The session token is handed to ``bw`` through the BW_SESSION environment
variable and secrets through stdin, so neither ever shows up in argv.
"""

import base64
import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Any, Mapping

from . import __util__
from .__util__ import AbortError, NotFoundError

logger = logging.getLogger(__name__)

SESSION_ENV = "BW_SESSION"


class AuthError(AbortError):
    """Vault login did not produce a usable session."""

    pass


class ConflictError(AbortError):
    """A vault item with the requested name already exists."""

    pass


class SecretStoreError(AbortError):
    """The vault CLI failed or returned something unusable."""

    pass


@dataclass(frozen=True)
class Session:
    """Vault session handle.

    Attributes:
        token: Session key returned by ``bw login --raw``
        external: True when the session came from the environment; this run
            must then leave it alone on exit
    """

    token: str = field(repr=False)
    external: bool = False


def _encode(payload: dict[str, Any]) -> bytes:
    """Equivalent of piping JSON through ``bw encode``."""
    return base64.b64encode(json.dumps(payload).encode("utf-8"))


class SecretStore:
    """Vault operations needed by the backup pipeline."""

    def __init__(self, cli_path: str, environ: Mapping[str, str] | None = None) -> None:
        self.cli_path = cli_path
        self._environ = os.environ if environ is None else environ

    def __repr__(self) -> str:
        return f"SecretStore({self.cli_path})"

    def login(self, identity: str) -> Session:
        """Log in as ``identity``, or reuse a session from the environment.

        The CLI prompts for the master password (and possibly a 2FA code)
        on the terminal, so only stdout is captured.
        """
        token = self._environ.get(SESSION_ENV, "").strip()
        if token:
            logger.info("Found vault session in %s, using that", SESSION_ENV)
            return Session(token=token, external=True)

        logger.info("Log in to vault as %s", identity)
        result = __util__.exec_subprocess(
            [self.cli_path, "login", "--raw", identity], stdout=subprocess.PIPE
        )
        token = __util__.decode_output(result.stdout).strip()
        if result.returncode != 0 or not token:
            raise AuthError(f"Vault login failed for {identity}")
        return Session(token=token, external=False)

    def logout(self, session: Session | None) -> None:
        """Log out of a session acquired by this run; never raises."""
        if session is None or session.external:
            return
        logger.info("Logging out of vault...")
        try:
            result = self._run(session, ["logout"])
        except AbortError as e:
            logger.error("Vault logout failed: %s", e)
            return
        if result.returncode != 0:
            logger.error(
                "Vault logout failed: %s", __util__.decode_output(result.stderr).strip()
            )

    def resolve_folder(self, session: Session, name: str) -> str:
        """Return the id of the folder called ``name``, creating it if needed."""
        for folder in self._json(session, ["list", "folders", "--search", name]):
            if folder.get("name") == name and folder.get("id"):
                logger.info("Using existing folder '%s'", name)
                return folder["id"]

        logger.info("Creating folder '%s'...", name)
        template = self._json(session, ["get", "template", "folder"])
        template["name"] = name
        created = self._json(session, ["create", "folder"], payload=template)
        folder_id = created.get("id") if isinstance(created, dict) else None
        if not folder_id:
            raise SecretStoreError(f"Vault did not return an id for folder '{name}'")
        return folder_id

    def store_secret(
        self, session: Session, name: str, value: str, note: str, folder_id: str
    ) -> None:
        """Create a login item ``name`` whose password is ``value``.

        Raises:
            ConflictError: if an item with that name already exists
        """
        if self._find_items(session, name):
            raise ConflictError(f"Vault item named '{name}' already exists!")

        login = self._json(session, ["get", "template", "item.login"])
        login.update(username="", password=value, totp="")
        item = self._json(session, ["get", "template", "item"])
        item.update(name=name, login=login, notes=note, folderId=folder_id)

        logger.info("Creating vault entry named '%s'...", name)
        result = self._run(session, ["create", "item"], payload=item)
        if result.returncode != 0:
            raise SecretStoreError(
                f"Creating vault item '{name}' failed: "
                f"{__util__.decode_output(result.stderr).strip()}"
            )

    def retrieve_secret(self, session: Session, name: str) -> str:
        """Return the password stored in the item called ``name``.

        Raises:
            NotFoundError: if there is no item with exactly that name
        """
        items = self._find_items(session, name)
        if not items:
            raise NotFoundError(f"Vault item named '{name}' not found")
        if len(items) > 1:
            raise ConflictError(f"More than one vault item named '{name}'")
        return self._password(items[0])

    def retrieve_item(self, session: Session, item_id: str) -> str:
        """Return the password stored in the item with id ``item_id``."""
        result = self._run(session, ["get", "item", item_id])
        if result.returncode != 0:
            raise NotFoundError(
                f"Vault item {item_id} not found: "
                f"{__util__.decode_output(result.stderr).strip()}"
            )
        return self._password(self._parse(result, ["get", "item"]))

    def _find_items(self, session: Session, name: str) -> list[dict[str, Any]]:
        # --search is a fuzzy match, only exact names count
        items = self._json(session, ["list", "items", "--search", name])
        return [item for item in items if item.get("name") == name]

    @staticmethod
    def _password(item: dict[str, Any]) -> str:
        password = (item.get("login") or {}).get("password")
        if not password:
            raise SecretStoreError(
                f"Vault item '{item.get('name', item.get('id'))}' has no password"
            )
        return password

    def _run(
        self, session: Session, args: list[str], payload: dict[str, Any] | None = None
    ) -> subprocess.CompletedProcess:
        env = dict(self._environ)
        env[SESSION_ENV] = session.token
        command = [self.cli_path, "--nointeraction", *args]
        if payload is None:
            return __util__.exec_subprocess(
                command, stdin=subprocess.DEVNULL, capture_output=True, env=env
            )
        return __util__.exec_subprocess(
            command, input=_encode(payload), capture_output=True, env=env
        )

    def _json(
        self, session: Session, args: list[str], payload: dict[str, Any] | None = None
    ) -> Any:
        result = self._run(session, args, payload=payload)
        if result.returncode != 0:
            raise SecretStoreError(
                f"bw {' '.join(args[:2])} failed: "
                f"{__util__.decode_output(result.stderr).strip()}"
            )
        return self._parse(result, args)

    @staticmethod
    def _parse(result: subprocess.CompletedProcess, args: list[str]) -> Any:
        try:
            return json.loads(__util__.decode_output(result.stdout))
        except json.JSONDecodeError as e:
            raise SecretStoreError(
                f"bw {' '.join(args[:2])} returned invalid JSON: {e}"
            ) from e
