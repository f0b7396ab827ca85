"""
ctxkeep.vcs.identity — Stable project key for the remote store.

Clones of the same repository share a key because it is derived from the
normalised ``origin`` URL.  Directories without a remote fall back to a hash
of their absolute path, which only matches on the same machine.
"""

from __future__ import annotations

import hashlib
import logging
import re
import subprocess
from pathlib import Path

from ctxkeep.core.models import ProjectIdentity

logger = logging.getLogger("ctxkeep.identity")

HASH_LENGTH = 16

_SCP_LIKE = re.compile(r"^[\w.-]+@([\w.-]+):(.+)$")
_URL_LIKE = re.compile(r"^[a-z][a-z0-9+.-]*://(?:[^@/]+@)?([\w.-]+)(?::\d+)?/(.+)$", re.IGNORECASE)


def normalize_remote_url(url: str) -> str:
    """
    ``git@github.com:user/repo.git``      → ``github.com/user/repo``
    ``https://github.com/user/repo.git/`` → ``github.com/user/repo``
    ``ssh://git@host:22/user/repo``       → ``host/user/repo``
    """
    normalized = url.strip().rstrip("/")
    if normalized.endswith(".git"):
        normalized = normalized[:-4]
    normalized = normalized.rstrip("/")

    m = _SCP_LIKE.match(normalized)
    if m:
        return f"{m.group(1)}/{m.group(2)}"
    m = _URL_LIKE.match(normalized)
    if m:
        return f"{m.group(1)}/{m.group(2)}"
    return normalized


def compute_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:HASH_LENGTH]


def _project_name(key: str) -> str:
    parts = [p for p in key.replace("\\", "/").split("/") if p]
    return parts[-1] if parts else key


def git_remote_url(project_dir: Path) -> str | None:
    try:
        result = subprocess.run(
            ["git", "remote", "get-url", "origin"],
            capture_output=True,
            text=True,
            cwd=str(project_dir),
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("git remote lookup failed in %s: %s", project_dir, exc)
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def identify_project(project_dir: Path) -> ProjectIdentity:
    """Identify *project_dir* by its git origin, or by its path if it has none."""
    project_dir = Path(project_dir).resolve()
    remote = git_remote_url(project_dir)
    if remote:
        normalized = normalize_remote_url(remote)
        identity = ProjectIdentity(
            project_hash=compute_hash(normalized),
            project_name=_project_name(normalized),
            remote_url=normalized,
        )
        logger.debug("Identified %s via git remote %s", project_dir, normalized)
        return identity

    local = str(project_dir)
    logger.debug("Identified %s via directory path", project_dir)
    return ProjectIdentity(
        project_hash=compute_hash(local),
        project_name=_project_name(local),
        local_path=local,
    )
