# git.py
# Small, focused wrapper around the Git CLI.
# The rest of the codebase never calls subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD; used in artifact names and cache keys via {run.sha}."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """Current branch name, or the HEAD SHA when detached."""
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if ref == "HEAD":
        return head_sha(cwd)
    return ref


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    # any porcelain output means uncommitted or untracked changes
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def describe(cwd: Optional[str | Path] = None) -> dict[str, str]:
    """
    Best-effort git facts for the run context.

    Outside a repository (or without git installed) every value is "".
    """
    try:
        return {"sha": head_sha(cwd), "ref": current_ref(cwd), "dirty": str(is_dirty(cwd)).lower()}
    except (subprocess.CalledProcessError, FileNotFoundError, OSError):
        return {"sha": "", "ref": "", "dirty": ""}
