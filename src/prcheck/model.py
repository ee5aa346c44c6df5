# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

SUCCEEDED = "succeeded"
FAILED = "failed"


@dataclass(frozen=True)
class Trigger:
    """The event that starts a run (e.g. a pull request being opened)."""
    event: str
    ref: str | None = None
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EnvironmentDescriptor:
    """One concrete combination of matrix values, e.g. (stable, ubuntu-latest)."""
    values: Tuple[Tuple[str, Any], ...] = ()

    def get(self, axis: str, default: Any = None) -> Any:
        for k, v in self.values:
            if k == axis:
                return v
        return default

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.values)

    @property
    def label(self) -> str:
        if not self.values:
            return "default"
        return ", ".join(f"{k}={v}" for k, v in self.values)

    @property
    def slug(self) -> str:
        # filesystem-safe, used for per-environment workspaces
        if not self.values:
            return "default"
        raw = "-".join(str(v) for _, v in self.values)
        return "".join(c if c.isalnum() or c in "._-" else "_" for c in raw)


@dataclass(frozen=True)
class CacheBinding:
    """
    A restorable/savable path plus the template its cache key is rendered from.

    Key templates understand ${{ runner.os }}, ${{ matrix.<axis> }} and
    ${{ hashFiles('glob', ...) }}.
    """
    path: str
    key: str
    name: str | None = None

    @property
    def label(self) -> str:
        return self.name or self.path


@dataclass(frozen=True)
class Step:
    """A single shell command inside a pipeline."""
    name: str
    run: str
    cwd: str | None = None
    shell: str | None = None


@dataclass
class Pipeline:
    """
    A declared pipeline: ordered steps, the matrix they run under, and the
    caches bound around them.
    """
    name: str
    steps: List[Step]
    on: List[str] = field(default_factory=lambda: ["pull_request"])
    matrix: Dict[str, List[Any]] = field(default_factory=dict)
    caches: List[CacheBinding] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    requires: List[str] = field(default_factory=list)
    runs_on: Optional[str] = None

    def triggered_by(self, trigger: Trigger) -> bool:
        return trigger.event in self.on


@dataclass(frozen=True)
class CacheState:
    binding: CacheBinding
    key: str
    hit: bool
    reason: str


@dataclass(frozen=True)
class StepResult:
    name: str
    exit_status: int
    duration: float
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class RunResult:
    env: EnvironmentDescriptor
    status: str
    steps: List[StepResult] = field(default_factory=list)
    failed_step_index: Optional[int] = None  # 1-indexed
    failed_step: Optional[str] = None
    exit_status: Optional[int] = None
    error: Optional[Exception] = None
    cancelled: bool = False
    caches: List[CacheState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == SUCCEEDED

    @property
    def duration(self) -> float:
        return sum(s.duration for s in self.steps)


@dataclass
class PipelineResult:
    pipeline: str
    trigger: Trigger
    runs: List[RunResult] = field(default_factory=list)
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.runs)

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1


# ----------------------------------------------------------------------
# Fail-fast state machine
# ----------------------------------------------------------------------

PENDING = "pending"
RUNNING = "running"


class RunState:
    """
    Pending -> Running(i) -> {Succeeded, Failed(i)}

    Running(i) moves to Running(i+1) only when step i succeeded.
    """

    def __init__(self, step_count: int):
        self.step_count = step_count
        self.phase = PENDING
        self.index: Optional[int] = None

    @property
    def terminal(self) -> bool:
        return self.phase in (SUCCEEDED, FAILED)

    def start(self) -> None:
        if self.phase != PENDING:
            raise RuntimeError(f"cannot start from {self.phase}")
        if self.step_count == 0:
            self.phase = SUCCEEDED
            return
        self.phase = RUNNING
        self.index = 0

    def advance(self, ok: bool) -> None:
        if self.phase != RUNNING:
            raise RuntimeError(f"cannot advance from {self.phase}")
        if not ok:
            self.phase = FAILED
            return
        assert self.index is not None
        if self.index + 1 >= self.step_count:
            self.phase = SUCCEEDED
            return
        self.index += 1

    def __repr__(self) -> str:
        if self.phase in (RUNNING, FAILED):
            return f"RunState({self.phase}({self.index}))"
        return f"RunState({self.phase})"
