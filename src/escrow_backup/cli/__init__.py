"""Command line interface for escrow-backup."""

from .dispatcher import main

__all__ = ["main"]
