# pyright: standard

"""escrow-backup: escrow_backup/__logger__.py
A common logger for displaying status lines through rich.
"""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

# Status lines and errors both go to stderr, stdout stays free for output
# that is meant to be piped (e.g. ``config init``).
cons = Console(stderr=True)
rich_handler = RichHandler(console=cons, show_path=False)
# Create a logger directly
logger = logging.Logger("escrow-backup", logging.INFO)

FILE_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def create_logger(
    level: str | int = logging.INFO, log_file: str | Path | None = None
) -> None:
    """Helper function to setup logging for a run.

    Args:
        level: Log level name or number for the console handler
        log_file: Optional path of a plain text log file
    """
    # pylint: disable=global-statement
    global cons, rich_handler

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    cons = Console(stderr=True)
    rich_handler = RichHandler(console=cons, show_path=False)
    handlers: list[logging.Handler] = [rich_handler]

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
        handlers.append(file_handler)

    logger.handlers.clear()
    logger.propagate = False
    logger.setLevel(level)
    for handler in handlers:
        logger.addHandler(handler)

    logging.basicConfig(
        format="%(message)s",
        datefmt="%H:%M:%S",
        level=level,
        handlers=handlers,
        force=True,
    )
