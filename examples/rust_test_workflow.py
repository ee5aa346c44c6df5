# rust_test_workflow.py
# The same pull-request check as rust_test.yml, written with the DSL.
from __future__ import annotations
from prcheck.dsl import pipeline, sh, cache

LOCKFILE = ["**/Cargo.lock"]

PIPELINE = pipeline(
    "Test",
    sh("fmt", "cargo fmt -- --check"),
    sh("check", "cargo check --release"),
    sh("test", "cargo test"),
    on=["pull_request"],
    matrix={"rust-toolchain": ["stable"], "platform": ["ubuntu-latest"]},
    caches=[
        # independent bindings: each path is invalidated on its own
        cache("~/.cargo/registry", "cargo-registry", hash_files=LOCKFILE),
        cache("~/.cargo/git", "cargo-index", hash_files=LOCKFILE),
        cache("target", "cargo-build-target", hash_files=LOCKFILE),
    ],
    requires=["cargo"],
    runs_on="${{ matrix.platform }}",
    shell="bash",
)
