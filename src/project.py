"""Project identity: derive a stable, filesystem-safe name from a working directory."""

import logging
import os
import re
import subprocess
from pathlib import Path, PurePosixPath
from typing import Optional

logger = logging.getLogger(__name__)

UNKNOWN_PROJECT = "unknown"

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")

EPHEMERAL_ROOTS = ("/tmp", "/private/tmp", "/var/tmp")


def get_git_root(cwd: str) -> Optional[str]:
    """
    Find the git repository root for a directory.

    Args:
        cwd: Directory to start from

    Returns:
        Absolute path to git repo root, or None if not in a git repo
    """
    if not cwd or not Path(cwd).is_dir():
        return None
    try:
        result = subprocess.run(
            ["git", "-C", cwd, "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            timeout=2,
        )
        if result.returncode == 0:
            return result.stdout.strip() or None
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Failed to find git root for {cwd}: {e}")
    return None


def sanitize_project_name(name: str) -> str:
    """Strip everything outside [A-Za-z0-9._-]; never returns an empty name."""
    cleaned = _UNSAFE_CHARS_RE.sub("", name or "")
    return cleaned or UNKNOWN_PROJECT


def resolve_project_name(cwd: str) -> str:
    """
    Project name for a working directory.

    Prefers the git root's name so monorepo subdirectories
    (``repo/packages/app``) map to the repository, falling back to the
    directory basename.
    """
    if not cwd:
        return UNKNOWN_PROJECT
    root = get_git_root(cwd)
    name = PurePosixPath(root).name if root else PurePosixPath(cwd).name
    return sanitize_project_name(name)


def is_ephemeral_path(cwd: str, home: Optional[str] = None) -> bool:
    """
    True for working directories whose sessions should not be announced:
    temp directories, agent worktrees, and the bare home directory.
    """
    if not cwd:
        return False
    path = cwd.rstrip("/") or "/"

    for root in EPHEMERAL_ROOTS:
        if path == root or path.startswith(root + "/"):
            return True

    parts = PurePosixPath(path).parts
    for i in range(len(parts) - 2):
        if parts[i] == ".claude" and parts[i + 1] == "worktrees" and parts[i + 2].startswith("agent-"):
            return True

    home = home if home is not None else os.path.expanduser("~")
    if home and path == (home.rstrip("/") or "/"):
        return True
    return False
