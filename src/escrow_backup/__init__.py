"""escrow-backup: escrow_backup/__init__.py."""

__version__ = "0.1.0"

# Name of the vault item holding the passphrase for a given snapshot.
SECRET_NAME_PREFIX = "Backup "


def secret_name_for(ref: str) -> str:
    """Return the vault item name used for the snapshot ``ref``."""
    return f"{SECRET_NAME_PREFIX}{ref}"
