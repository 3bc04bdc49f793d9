"""Repository ownership details stamped onto interaction rows."""
from __future__ import annotations

import getpass
import logging
import re
import subprocess
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger("ledger.git")

_REMOTE_REPO_PATTERN = re.compile(r"[:/]([^/:]+/[^/]+?)(?:\.git)?/?$")


@dataclass(frozen=True)
class GitInfo:
    owner: str
    repository: str | None = None
    repository_url: str | None = None
    repository_root: str | None = None


def _git(project_root: Path, *args: str) -> str:
    try:
        result = subprocess.run(
            ["git", "-C", str(project_root), *args],
            capture_output=True,
            text=True,
            check=False,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("git %s failed in %s: %s", " ".join(args), project_root, exc)
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout.strip()


def _local_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def repository_from_remote(remote_url: str) -> str | None:
    """`git@github.com:acme/app.git` -> `acme/app`."""
    match = _REMOTE_REPO_PATTERN.search(remote_url.strip())
    return match.group(1) if match else None


@lru_cache(maxsize=32)
def get_git_info(project_root: str) -> GitInfo:
    root = Path(project_root)
    owner = _git(root, "config", "user.name") or _local_user()
    repository_root = _git(root, "rev-parse", "--show-toplevel") or None
    remote_url = _git(root, "remote", "get-url", "origin") or None
    return GitInfo(
        owner=owner,
        repository=repository_from_remote(remote_url) if remote_url else None,
        repository_url=remote_url,
        repository_root=repository_root,
    )
