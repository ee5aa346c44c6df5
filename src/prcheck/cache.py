# cache.py
from __future__ import annotations

import json
import os
import tarfile
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import CacheSaveFailure
from .expressions import render
from .model import CacheBinding, CacheState, EnvironmentDescriptor
from .ui.console import get_console

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Binding-level caching, one blob per binding:
#   key  = rendered binding.key template, e.g.
#          "${{ runner.os }}-cargo-registry-${{ hashFiles('**/Cargo.lock') }}"
#          -> "Linux-cargo-registry-3f1c..."
#   blob = tar.gz of the binding's target path
#
# restore: exact key match only, a miss leaves the target untouched.
# save:    only for bindings that were not an exact hit; best-effort.
#
# Example usage in runner (high-level):
#   store = CacheStore(".prcheck/cache")
#   state = restore_cache(binding, store, workspace=ws, env=env)
#   ...run steps...
#   save_cache(binding, state, store, workspace=ws, env=env)
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".prcheck/cache"


def _safe_name(key: str) -> str:
    return "".join(c if c.isalnum() or c in "._-" else "_" for c in key)


class CacheStore:
    """
    File-based blob store:
      root/
        <key>.tar.gz
        <key>.manifest.json

    Blobs are streamed through a temp file in root and published with a
    rename, so readers only ever see complete blobs.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{_safe_name(key)}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{_safe_name(key)}.manifest.json"

    def blob_path(self, key: str) -> Optional[Path]:
        art = self.artifact_path(key)
        return art if art.is_file() else None

    def get(self, key: str) -> Optional[bytes]:
        art = self.blob_path(key)
        return art.read_bytes() if art is not None else None

    @contextmanager
    def writer(self, key: str, *, path: str | None = None) -> Iterator[Path]:
        """
        Yield a private temp file to write the blob into. On a clean exit the
        manifest is written, then the blob is renamed into place. Concurrent
        writers of the same key race; the last rename wins.
        """
        art = self.artifact_path(key)
        tmp = art.with_name(f".{art.name}.{uuid.uuid4().hex}.tmp")
        try:
            yield tmp
            self._write_manifest(key, path=path, size=tmp.stat().st_size)
            os.replace(tmp, art)
        finally:
            if tmp.exists():
                tmp.unlink()

    def put(self, key: str, data: bytes, *, path: str | None = None) -> None:
        with self.writer(key, path=path) as tmp:
            tmp.write_bytes(data)

    def _write_manifest(self, key: str, *, path: str | None, size: int) -> None:
        manifest = {
            "key": key,
            "path": path,
            "size": size,
            "saved_at_unix": int(time.time()),
        }
        man = self.manifest_path(key)
        man_tmp = man.with_name(f".{man.name}.{uuid.uuid4().hex}.tmp")
        try:
            man_tmp.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
            os.replace(man_tmp, man)
        finally:
            if man_tmp.exists():
                man_tmp.unlink()

    def keys(self) -> List[str]:
        """Keys of published blobs. A manifest whose blob never landed is ignored."""
        out = []
        for man in sorted(self.root.glob("*.manifest.json")):
            try:
                key = json.loads(man.read_text(encoding="utf-8"))["key"]
            except (OSError, ValueError, KeyError):
                continue
            if self.blob_path(key) is not None:
                out.append(key)
        return out

    def prune(self, keep: int = 3) -> List[str]:
        """
        Keep only the newest N blobs. Uses file mtime as "newest".
        Returns the removed blob file names.
        """
        tars = sorted(self.root.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        removed = []
        for p in tars[keep:]:
            stem = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (self.root / f"{stem}.manifest.json").unlink(missing_ok=True)
            removed.append(p.name)
        return removed


# ---------------------------------------------------------------------
# Packing
# ---------------------------------------------------------------------

def resolve_target(binding: CacheBinding, workspace: str | Path) -> Path:
    p = Path(binding.path).expanduser()
    if not p.is_absolute():
        p = Path(workspace) / p
    return p.resolve()


def pack_path(target: Path, dest: Path) -> None:
    """tar.gz the target (file or directory) into dest, under its own base name."""
    with tarfile.open(str(dest), mode="w:gz") as tar:
        tar.add(str(target), arcname=target.name)


def unpack_into(blob: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(str(blob), mode="r:gz") as tar:
        members = tar.getmembers()
        root_name = members[0].name.split("/")[0] if members else target.name
        if root_name != target.name:
            # blob was saved from a path with a different base name
            for m in members:
                m.name = target.name + m.name[len(root_name):]
        if hasattr(tarfile, "data_filter"):
            tar.extractall(path=str(target.parent), members=members, filter="data")
        else:
            tar.extractall(path=str(target.parent), members=members)


# ---------------------------------------------------------------------
# Restore / save
# ---------------------------------------------------------------------

def compute_cache_key(
    binding: CacheBinding,
    *,
    workspace: str | Path = ".",
    env: EnvironmentDescriptor = EnvironmentDescriptor(),
    os_name: Optional[str] = None,
) -> str:
    return render(binding.key, env=env, workspace=workspace, os_name=os_name)


def restore_cache(
    binding: CacheBinding,
    store: CacheStore,
    *,
    workspace: str | Path = ".",
    env: EnvironmentDescriptor = EnvironmentDescriptor(),
    os_name: Optional[str] = None,
) -> CacheState:
    """
    Restore the binding's target path from an exactly matching blob.

    A miss is not an error: the target path is left as it was.
    """
    console = get_console()
    key = compute_cache_key(binding, workspace=workspace, env=env, os_name=os_name)
    blob = store.blob_path(key)
    if blob is None:
        console.print_cache_miss(env.label, binding.path, key)
        return CacheState(binding=binding, key=key, hit=False, reason="cache miss")

    try:
        unpack_into(blob, resolve_target(binding, workspace))
    except (tarfile.TarError, OSError, EOFError) as e:
        console.print_warning(f"[{env.label}] cache {key} exists but restore failed: {e}")
        return CacheState(binding=binding, key=key, hit=False, reason=f"restore failed: {e}")

    console.print_cache_hit(env.label, binding.path, key)
    return CacheState(binding=binding, key=key, hit=True, reason="cache hit")


def save_cache(
    binding: CacheBinding,
    state: CacheState,
    store: CacheStore,
    *,
    workspace: str | Path = ".",
    env: EnvironmentDescriptor = EnvironmentDescriptor(),
) -> bool:
    """
    Save the binding's target path under the key computed at restore time.

    Best-effort: returns True when a blob was written, False otherwise. A
    failure is reported as a CacheSaveFailure warning and never raised.
    """
    console = get_console()
    if state.hit:
        return False

    target = resolve_target(binding, workspace)
    if not target.exists():
        console.print_info(f"[{env.label}] CACHE: nothing to save at {binding.path}")
        return False

    try:
        with store.writer(state.key, path=binding.path) as tmp:
            pack_path(target, tmp)
    except CacheSaveFailure as e:
        failure = e
    except (OSError, tarfile.TarError) as e:
        failure = CacheSaveFailure(state.key, binding.path, str(e))
    else:
        console.print_cache_saved(env.label, binding.path, state.key)
        return True

    console.print_warning(f"[{env.label}] {failure.message}")
    return False
