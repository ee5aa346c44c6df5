"""
Pytest configuration and shared fixtures

Provides:
- a throwaway repository with a lockfile
- a cache store outside that repository
- a provisioner that accepts every environment on this host
"""

import os
from pathlib import Path

import pytest

from prcheck.cache import CacheStore
from prcheck.model import EnvironmentDescriptor, Pipeline


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    (root / "Cargo.lock").write_text("[[package]]\nname = \"demo\"\nversion = \"0.1.0\"\n")
    (root / "src").mkdir()
    (root / "src" / "main.rs").write_text("fn main() {}\n")
    return root


@pytest.fixture
def store(tmp_path: Path) -> CacheStore:
    return CacheStore(tmp_path / "cache")


def _accept_all(pipeline: Pipeline, env: EnvironmentDescriptor) -> dict:
    environ = os.environ.copy()
    environ.update(pipeline.env)
    for axis, value in env.values:
        environ["MATRIX_" + axis.upper().replace("-", "_")] = str(value)
    return environ


@pytest.fixture
def provisioner():
    return _accept_all


@pytest.fixture
def calls(repo: Path):
    """Steps append their name to calls.txt; this reads the log back."""

    def _read() -> list:
        log = repo / "calls.txt"
        if not log.exists():
            return []
        return log.read_text().split()

    return _read
