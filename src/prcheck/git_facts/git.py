# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

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

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        FileNotFoundError: git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def is_git_repo(path: str | Path = ".") -> bool:
    try:
        return _git(["rev-parse", "--is-inside-work-tree"], cwd=path) == "true"
    except (subprocess.CalledProcessError, FileNotFoundError):
        return False


def repo_root(path: str | Path = ".") -> Path:
    """Return the absolute path to the root of the Git repository containing path."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=path))


def head_sha(path: str | Path = ".") -> str:
    """Return the full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=path)


def get_remote_url(remote: str = "origin", path: str | Path = ".") -> str:
    return _git(["remote", "get-url", remote], cwd=path)


def checkout(ref: str, path: str | Path) -> str:
    """
    Check out ref (branch, tag or SHA) as a detached HEAD in path.

    Returns the SHA that was checked out.
    """
    _git(["checkout", "--quiet", "--detach", ref], cwd=path)
    return head_sha(path)
