"""Repository package for database access."""

from .save_state import SqliteSaveStateRepository
from .interactions import SqliteInteractionRepository
from .backups import SqliteBackupRepository
from .file_index import SqliteFileIndexRepository

__all__ = [
    "SqliteSaveStateRepository",
    "SqliteInteractionRepository",
    "SqliteBackupRepository",
    "SqliteFileIndexRepository",
]
