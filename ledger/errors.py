"""Exception types raised inside the ledger core.

Public operations in `ledger.operations` convert these into failure results;
nothing here is expected to escape a CLI invocation.
"""
from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger failures."""


class InvalidInputError(LedgerError, ValueError):
    """Raised when an operation receives missing or malformed parameters."""


class TranscriptReadError(LedgerError, OSError):
    """Raised when a transcript log cannot be opened or read."""


class SaveStateNotFoundError(LedgerError, LookupError):
    """Raised when updating a save state that was never created."""


class SaveStateRegressionError(LedgerError):
    """Raised when an update would move a log's saved line offset backwards."""

    def __init__(self, log_id: str, current_line: int, requested_line: int):
        super().__init__(
            f"Refusing to move saved offset for {log_id} backwards "
            f"({current_line} -> {requested_line})"
        )
        self.log_id = log_id
        self.current_line = current_line
        self.requested_line = requested_line


class SchemaMigrationError(LedgerError):
    """Raised when the SQLite schema cannot be brought up to date."""
