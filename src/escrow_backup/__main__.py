# pyright: standard

"""escrow-backup: escrow_backup/__main__.py.

Snapshot, compress, encrypt and upload a backup, escrowing the
encryption passphrase in a Bitwarden vault.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
