# src/prcheck/dsl.py
from __future__ import annotations

import itertools
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .model import CacheBinding, EnvironmentDescriptor, Pipeline, Step


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(name: str, cmd: str, *, cwd: str | None = None, shell: str | None = None) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, shell=shell)


# ---------------------------------------------------------------------
# Cache helper
# ---------------------------------------------------------------------

def cache(
    path: str,
    prefix: str,
    *,
    hash_files: Sequence[str] = (),
    name: str | None = None,
) -> CacheBinding:
    """
    Bind a path to a key of the form <os>-<prefix>-<content hash>.

        cache("~/.cargo/registry", "cargo-registry", hash_files=["**/Cargo.lock"])
    """
    key = "${{ runner.os }}-" + prefix
    if hash_files:
        quoted = ", ".join(f"'{p}'" for p in hash_files)
        key += "-${{ hashFiles(" + quoted + ") }}"
    return CacheBinding(path=path, key=key, name=name or prefix)


# ---------------------------------------------------------------------
# Functional Pipeline helper
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *steps: Step,  # allow: pipeline("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,
    on: Optional[Iterable[str]] = None,
    matrix: Optional[Mapping[str, Iterable[Any]]] = None,
    caches: Optional[List[CacheBinding]] = None,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    runs_on: str | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    shell: str | None = None,  # default shell applied to steps missing shell
) -> Pipeline:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"pipeline({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]
    if shell is not None:
        steps_final = [s if s.shell is not None else replace(s, shell=shell) for s in steps_final]

    return Pipeline(
        name=name,
        steps=steps_final,
        on=list(on) if on is not None else ["pull_request"],
        matrix={k: list(v) for k, v in (matrix or {}).items()},
        caches=list(caches or []),
        env={k: str(v) for k, v in (env or {}).items()},
        requires=list(requires or []),
        runs_on=runs_on,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class PipelineBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._on: list[str] = []
        self._matrix: dict[str, list[Any]] = {}
        self._caches: list[CacheBinding] = []
        self._env: dict[str, str] = {}
        self._requires: list[str] = []
        self._runs_on: Optional[str] = None

    def on(self, *events: str):
        self._on.extend(events)
        return self

    def axis(self, name: str, *values: Any):
        self._matrix[name] = list(values)
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def define_requirements(self, *tools: str):
        self._requires.extend(tools)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, shell: str | None = None):
        self._steps.append(Step(name=name, run=run, cwd=cwd, shell=shell))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def cache(self, path: str, prefix: str, *hash_files: str):
        self._caches.append(cache(path, prefix, hash_files=hash_files))
        return self

    def build(self) -> Pipeline:
        if not self._steps:
            raise ValueError(f"Pipeline '{self.name}' has no steps")

        return Pipeline(
            name=self.name,
            steps=list(self._steps),
            on=list(self._on) or ["pull_request"],
            matrix=dict(self._matrix),
            caches=list(self._caches),
            env=dict(self._env),
            requires=list(self._requires),
            runs_on=self._runs_on,
        )


def build(name: str) -> PipelineBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return PipelineBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def expand_matrix(axes: Mapping[str, Iterable[Any]]) -> List[EnvironmentDescriptor]:
    """
    Cartesian product of the axes, in declaration order (outer axis varies slowest).

    Example:
        expand_matrix({"toolchain": ["stable", "nightly"], "platform": ["ubuntu-latest"]})
        -> [(stable, ubuntu-latest), (nightly, ubuntu-latest)]
    """
    names = list(axes.keys())
    values = [list(axes[n]) for n in names]
    for n, v in zip(names, values):
        if not v:
            raise ValueError(f"matrix axis {n!r} has no values")

    return [
        EnvironmentDescriptor(values=tuple(zip(names, combo)))
        for combo in itertools.product(*values)
    ]


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*pipelines: Pipeline) -> List[Pipeline]:
    """
    Workflow definition helper.

        from prcheck import wf, pipeline, sh

        def workflow():
            return wf(pipeline(...), pipeline(...))
    """
    return list(pipelines)
