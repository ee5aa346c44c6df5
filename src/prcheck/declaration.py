"""
Workflow declarations

Loads pipelines from YAML, either in the flat form

    name: Test
    on: pull_request
    matrix:
      rust-toolchain: [stable]
      platform: [ubuntu-latest]
    caches:
      - path: target
        key: "${{ runner.os }}-cargo-build-target-${{ hashFiles('**/Cargo.lock') }}"
    steps:
      - name: test
        run: cargo test

or in the hosted-CI workflow form (`jobs.<id>.strategy.matrix`, `runs-on`,
`uses: actions/cache@v1` steps). Setup actions other than the cache action
are the host's job and are skipped.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import DeclarationError
from .model import CacheBinding, Pipeline, Step
from .ui.console import get_console

CACHE_ACTION = "actions/cache@"


class StepDecl(BaseModel):
    """A `run:` step or a `uses:` action."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    shell: Optional[str] = None
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")

    @model_validator(mode="after")
    def run_xor_uses(self) -> "StepDecl":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if self.run is not None:
            return self.run.strip().splitlines()[0] if self.run.strip() else "run"
        return str(self.uses)


class CacheDecl(BaseModel):
    model_config = {"extra": "forbid"}

    path: str
    key: str
    name: Optional[str] = None


def _as_axes(value: Any) -> Dict[str, List[Any]]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("matrix must be a mapping of axis -> values")
    axes = {}
    for axis, values in value.items():
        if axis in ("include", "exclude"):
            raise ValueError(f"matrix '{axis}' rules are not supported")
        axes[str(axis)] = list(values) if isinstance(values, list) else [values]
    return axes


class StrategyDecl(BaseModel):
    model_config = {"extra": "ignore"}

    matrix: Dict[str, List[Any]] = Field(default_factory=dict)

    @field_validator("matrix", mode="before")
    @classmethod
    def matrix_axes(cls, value: Any) -> Dict[str, List[Any]]:
        return _as_axes(value)


class JobDecl(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Optional[str] = None
    runs_on: Optional[str] = Field(default=None, alias="runs-on")
    strategy: StrategyDecl = Field(default_factory=StrategyDecl)
    matrix: Dict[str, List[Any]] = Field(default_factory=dict)
    caches: List[CacheDecl] = Field(default_factory=list)
    env: Dict[str, Any] = Field(default_factory=dict)
    requires: List[str] = Field(default_factory=list)
    defaults: Dict[str, Any] = Field(default_factory=dict)
    steps: List[StepDecl]

    @field_validator("matrix", mode="before")
    @classmethod
    def matrix_axes(cls, value: Any) -> Dict[str, List[Any]]:
        return _as_axes(value)

    @model_validator(mode="after")
    def one_matrix(self) -> "JobDecl":
        if self.matrix and self.strategy.matrix:
            raise ValueError("declare the matrix either at 'matrix' or 'strategy.matrix', not both")
        return self

    @property
    def axes(self) -> Dict[str, List[Any]]:
        return self.matrix or self.strategy.matrix

    @property
    def default_shell(self) -> Optional[str]:
        run = self.defaults.get("run") or {}
        return run.get("shell") if isinstance(run, dict) else None


def _events(on: Any) -> List[str]:
    if on is None:
        return ["pull_request"]
    if isinstance(on, str):
        return [on]
    if isinstance(on, list):
        return [str(e) for e in on]
    if isinstance(on, dict):
        return [str(e) for e in on.keys()]
    raise ValueError(f"unsupported 'on' value: {on!r}")


def _to_pipeline(name: str, job: JobDecl, events: List[str], source: str) -> Pipeline:
    console = get_console()
    steps: List[Step] = []
    caches: List[CacheBinding] = [CacheBinding(path=c.path, key=c.key, name=c.name) for c in job.caches]

    for s in job.steps:
        if s.uses is not None:
            if s.uses.startswith(CACHE_ACTION):
                path = str(s.with_.get("path", "")).strip()
                key = s.with_.get("key")
                if not path or not key:
                    raise DeclarationError(source, f"cache step {s.label!r} needs 'with.path' and 'with.key'")
                if "\n" in path:
                    raise DeclarationError(source, f"cache step {s.label!r} must bind a single path")
                caches.append(CacheBinding(path=path, key=str(key), name=s.name))
            else:
                console.print_debug(f"{name}: '{s.uses}' is provided by the host environment, skipped")
            continue

        steps.append(
            Step(
                name=s.label,
                run=str(s.run),
                cwd=s.working_directory,
                shell=s.shell or job.default_shell,
            )
        )

    if not steps:
        raise DeclarationError(source, f"pipeline {name!r} has no run steps")

    return Pipeline(
        name=name,
        steps=steps,
        on=events,
        matrix=job.axes,
        caches=caches,
        env={k: str(v) for k, v in job.env.items()},
        requires=list(job.requires),
        runs_on=job.runs_on,
    )


def parse_declaration(raw: Dict[str, Any], source: str = "<declaration>") -> List[Pipeline]:
    """Validate a parsed YAML document and turn it into pipelines."""
    if not isinstance(raw, dict):
        raise DeclarationError(source, "declaration must be a mapping")

    raw = dict(raw)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in raw:
        raw["on"] = raw.pop(True)

    try:
        events = _events(raw.get("on"))
        wf_name = str(raw.get("name") or Path(source).stem)

        if "jobs" in raw:
            jobs = raw["jobs"]
            if not isinstance(jobs, dict) or not jobs:
                raise DeclarationError(source, "'jobs' must be a non-empty mapping")
            pipelines = []
            for job_id, body in jobs.items():
                job = JobDecl.model_validate(body or {})
                name = job.name or (wf_name if len(jobs) == 1 else f"{wf_name}/{job_id}")
                pipelines.append(_to_pipeline(name, job, events, source))
            return pipelines

        body = {k: v for k, v in raw.items() if k not in ("on", "name")}
        job = JobDecl.model_validate(body)
        return [_to_pipeline(wf_name, job, events, source)]
    except ValidationError as e:
        raise DeclarationError(source, str(e)) from e
    except ValueError as e:
        raise DeclarationError(source, str(e)) from e


def loads_declaration(text: str, source: str = "<string>") -> List[Pipeline]:
    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise DeclarationError(source, f"invalid YAML: {e}") from e
    return parse_declaration(raw, source)


def load_declaration(path: str | Path) -> List[Pipeline]:
    """Load pipelines from a YAML declaration file."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Declaration not found: {path}")
    with open(p, "r", encoding="utf-8") as f:
        return loads_declaration(f.read(), source=str(p))
