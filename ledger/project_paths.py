"""On-disk locations for a single project's ledger data."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ledger import config


@dataclass(frozen=True)
class LedgerPaths:
    project_dir: Path

    @classmethod
    def for_project(cls, project_dir: str | Path) -> "LedgerPaths":
        return cls(project_dir=Path(project_dir).resolve())

    @property
    def root(self) -> Path:
        return self.project_dir / config.LEDGER_DIR_NAME

    @property
    def db_path(self) -> Path:
        return self.root / config.DB_FILENAME

    @property
    def sessions_dir(self) -> Path:
        return self.root / "sessions"

    @property
    def links_dir(self) -> Path:
        return self.root / "session-links"

    @property
    def breadcrumb_path(self) -> Path:
        return self.root / ".pending-link.json"

    def link_path(self, log_id: str) -> Path:
        return self.links_dir / f"{short_id(log_id)}.json"


def short_id(log_id: str) -> str:
    """Fallback canonical id for a log that has no link: its first 8 chars."""
    return (log_id or "")[:8]
