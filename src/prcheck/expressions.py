# expressions.py
# ${{ ... }} substitution for cache keys, runs-on labels and step commands.
from __future__ import annotations

import hashlib
import platform
import re
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import DeclarationError
from .model import EnvironmentDescriptor

_EXPR = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
_HASH_FILES = re.compile(r"^hashFiles\((.*)\)$")
_QUOTED = re.compile(r"'([^']*)'|\"([^\"]*)\"")

# never part of a content hash: VCS metadata and our own cache/work dirs
EXCLUDED_PARTS = {".git", ".prcheck", "__pycache__"}


def runner_os() -> str:
    """Host OS identifier in the form hosted CI runners expose it."""
    system = platform.system()
    if system == "Darwin":
        return "macOS"
    if system == "Windows":
        return "Windows"
    return "Linux"


def _hash_file_contents(path: Path) -> bytes:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.digest()


def _matching_files(root: Path, patterns: Iterable[str]) -> List[Path]:
    found = {}
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        for p in root.glob(pat):
            if not p.is_file():
                continue
            rel = p.relative_to(root)
            if EXCLUDED_PARTS.intersection(rel.parts):
                continue
            found[rel.as_posix()] = p
    return [found[k] for k in sorted(found)]


def hash_files(root: str | Path, patterns: Iterable[str]) -> str:
    """
    SHA-256 over the contents of every file matching the glob patterns.

    Files are visited in relative-path order and each file's digest is folded
    into the result. No matching files gives an empty string.
    """
    files = _matching_files(Path(root), patterns)
    if not files:
        return ""
    h = hashlib.sha256()
    for f in files:
        h.update(_hash_file_contents(f))
    return h.hexdigest()


def render(
    template: str,
    *,
    env: EnvironmentDescriptor,
    workspace: str | Path = ".",
    os_name: Optional[str] = None,
) -> str:
    """Substitute runner.os, matrix.<axis> and hashFiles(...) expressions."""

    def _sub(m: re.Match) -> str:
        expr = m.group(1)
        if expr == "runner.os":
            return os_name or runner_os()
        if expr.startswith("matrix."):
            axis = expr[len("matrix."):]
            value = env.get(axis)
            if value is None:
                raise DeclarationError(template, f"unknown matrix axis {axis!r}")
            return str(value)
        hm = _HASH_FILES.match(expr)
        if hm:
            patterns = [a or b for a, b in _QUOTED.findall(hm.group(1))]
            if not patterns:
                raise DeclarationError(template, "hashFiles() needs at least one pattern")
            return hash_files(workspace, patterns)
        raise DeclarationError(template, f"unsupported expression ${{{{ {expr} }}}}")

    return _EXPR.sub(_sub, template)
