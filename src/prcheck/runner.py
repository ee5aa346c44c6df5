# runner.py
from __future__ import annotations

import os
import runpy
import shutil
import signal
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence

from . import settings
from .cache import CacheStore, restore_cache, save_cache
from .dsl import expand_matrix
from .errors import CIError, EnvironmentProvisionFailure, RunCancelled, StepFailure
from .expressions import render, runner_os
from .git_facts.git import checkout, is_git_repo
from .model import (
    FAILED,
    SUCCEEDED,
    CacheBinding,
    CacheState,
    EnvironmentDescriptor,
    Pipeline,
    PipelineResult,
    RunResult,
    RunState,
    Step,
    StepResult,
    Trigger,
)
from .ui.console import get_console


TOOL_HINTS = {
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "bash": "Install bash or fix PATH.",
    "git": "Install Git or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

# matrix axes that select a toolchain through a well-known variable
TOOLCHAIN_ENV = {
    "rust-toolchain": "RUSTUP_TOOLCHAIN",
}

_PLATFORM_FAMILIES = {
    "ubuntu": "Linux",
    "linux": "Linux",
    "debian": "Linux",
    "macos": "macOS",
    "windows": "Windows",
}

# exit status reported for a step whose command could not be started
NOT_STARTED = 127


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

class CancelToken:
    """Shared by every environment of one pipeline run."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Pipeline]:
    """
    Load pipelines from a workflow file.

    A .py file must define either:
      - workflow() -> Pipeline | List[Pipeline]
      - PIPELINES = [Pipeline, ...] or PIPELINE = Pipeline
    A .yml/.yaml file is read as a declaration (see prcheck.declaration).
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in (".yml", ".yaml"):
        from .declaration import load_declaration
        return load_declaration(wf_path)

    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py or .yml file, got: {wf_path.name}")

    module_name = f"prcheck_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    found = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        found = globals_dict["workflow"]()
    elif "PIPELINES" in globals_dict:
        found = globals_dict["PIPELINES"]
    elif "PIPELINE" in globals_dict:
        found = globals_dict["PIPELINE"]

    if isinstance(found, Pipeline):
        found = [found]
    if not isinstance(found, list) or not found or not all(isinstance(p, Pipeline) for p in found):
        raise TypeError(
            "Workflow must return/define Pipeline objects. "
            "Define workflow() -> List[Pipeline] or PIPELINES = [Pipeline, ...]."
        )
    return found


# ----------------------------------------------------------------------
# Provisioning
# ----------------------------------------------------------------------

Provisioner = Callable[[Pipeline, EnvironmentDescriptor], Dict[str, str]]


def platform_family(label: str) -> Optional[str]:
    """'ubuntu-latest' -> 'Linux'. Unknown labels give None."""
    head = label.strip().lower().split("-")[0]
    return _PLATFORM_FAMILIES.get(head)


def _matrix_var(axis: str) -> str:
    return "MATRIX_" + "".join(c if c.isalnum() else "_" for c in axis).upper()


def provision_environment(
    pipeline: Pipeline,
    env: EnvironmentDescriptor,
    *,
    os_name: Optional[str] = None,
) -> Dict[str, str]:
    """
    Check that this host can serve the environment and build its variables.

    Raises EnvironmentProvisionFailure when the runs-on platform does not
    match the host or a required tool is missing.
    """
    host = os_name or runner_os()

    label = render(pipeline.runs_on, env=env) if pipeline.runs_on else env.get("platform")
    if label:
        family = platform_family(str(label))
        if family is not None and family != host:
            raise EnvironmentProvisionFailure(
                env.label,
                f"runs-on {label!r} needs a {family} host, this host is {host}",
                runs_on=label,
            )

    missing = [t for t in pipeline.requires if shutil.which(t) is None]
    if missing:
        hints = "; ".join(TOOL_HINTS.get(t, f"Install {t} or fix PATH.") for t in missing)
        raise EnvironmentProvisionFailure(
            env.label,
            f"required tools not found: {', '.join(missing)}",
            hint=hints,
        )

    environ = os.environ.copy()
    environ.update(pipeline.env)
    environ["RUNNER_OS"] = host
    environ["PRCHECK_ENV"] = env.label
    for axis, value in env.values:
        environ[_matrix_var(axis)] = str(value)
        if axis in TOOLCHAIN_ENV:
            environ[TOOLCHAIN_ENV[axis]] = str(value)
    return environ


def prepare_workspace(
    repo_root: Path,
    work_root: Path,
    env: EnvironmentDescriptor,
    ref: str | None = None,
    slot: int = 0,
) -> Path:
    """
    Give the environment its own copy of the repository, checked out at ref.

    slot is the environment's position in the matrix expansion; slugs alone
    can collide (duplicate axis values, values containing "-").
    """
    dest = work_root / f"{slot:02d}-{env.slug}"
    if dest.exists():
        shutil.rmtree(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)

    ignored = {".prcheck"}
    try:
        ignored.add(work_root.resolve().relative_to(repo_root.resolve()).parts[0])
    except ValueError:
        pass  # work root lives outside the repository
    shutil.copytree(repo_root, dest, symlinks=True, ignore=shutil.ignore_patterns(*sorted(ignored)))

    if ref:
        if not is_git_repo(dest):
            raise EnvironmentProvisionFailure(env.label, f"cannot check out {ref!r}: not a git repository")
        try:
            checkout(ref, dest)
        except subprocess.CalledProcessError as e:
            raise EnvironmentProvisionFailure(
                env.label,
                f"git checkout {ref} failed",
                stderr=(e.stderr or "").strip(),
            ) from e
    return dest


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _shell_argv(step: Step, cmd: str) -> List[str]:
    if step.shell == "bash":
        # same invocation hosted runners use for `shell: bash`
        return ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c", cmd]
    if step.shell == "sh":
        return ["sh", "-e", "-c", cmd]
    return [step.shell or "sh", "-c", cmd]


def _terminate(proc: subprocess.Popen) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


def run_step(
    step: Step,
    env: EnvironmentDescriptor,
    *,
    workspace: str | Path = ".",
    environ: Optional[Dict[str, str]] = None,
    cancel: Optional[CancelToken] = None,
    poll_interval: float = 0.2,
) -> StepResult:
    """
    Run one step's command through the shell and wait for it to exit.

    A non-zero exit is a result, not an exception. RunCancelled is raised when
    the cancel token fires while the command is running.
    """
    workspace = Path(workspace)
    cmd = step.run
    if "${{" in cmd:
        cmd = render(cmd, env=env, workspace=workspace)

    started = time.monotonic()
    cwd = (workspace / (step.cwd or ".")).resolve()
    if not cwd.is_dir():
        return StepResult(
            name=step.name,
            exit_status=NOT_STARTED,
            duration=time.monotonic() - started,
            stderr=f"working directory not found: {cwd}",
        )

    popen_args = dict(
        cwd=str(cwd),
        env=environ if environ is not None else os.environ.copy(),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        start_new_session=(os.name == "posix"),
    )
    try:
        if step.shell is None:
            proc = subprocess.Popen(cmd, shell=True, **popen_args)
        else:
            proc = subprocess.Popen(_shell_argv(step, cmd), **popen_args)
    except OSError as e:
        return StepResult(
            name=step.name,
            exit_status=NOT_STARTED,
            duration=time.monotonic() - started,
            stderr=f"could not start {step.shell or 'shell'}: {e}",
        )

    while True:
        try:
            stdout, stderr = proc.communicate(timeout=poll_interval)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                _terminate(proc)
                proc.communicate()
                raise RunCancelled(env.label, step.name, cancel.reason or "cancelled")

    tail = settings.OUTPUT_TAIL
    return StepResult(
        name=step.name,
        exit_status=proc.returncode,
        duration=time.monotonic() - started,
        stdout=stdout[-tail:] if tail > 0 else "",
        stderr=stderr[-tail:] if tail > 0 else "",
    )


def execute_run(
    steps: Sequence[Step],
    env: EnvironmentDescriptor,
    *,
    workspace: str | Path = ".",
    environ: Optional[Dict[str, str]] = None,
    cancel: Optional[CancelToken] = None,
) -> RunResult:
    """
    Run steps in declared order, stopping at the first non-success.

    failed_step_index is 1-indexed; steps after it never start.
    """
    console = get_console()
    state = RunState(len(steps))
    result = RunResult(env=env, status=FAILED)
    state.start()

    while not state.terminal:
        i = state.index
        step = steps[i]
        console.print_step(env.label, step.name)
        try:
            if cancel is not None and cancel.cancelled:
                raise RunCancelled(env.label, step.name, cancel.reason or "cancelled")
            step_result = run_step(step, env, workspace=workspace, environ=environ, cancel=cancel)
        except RunCancelled as e:
            result.cancelled = True
            result.failed_step_index = i + 1
            result.failed_step = step.name
            result.error = e
            console.print_failure(step.name, e.message)
            return result

        result.steps.append(step_result)
        state.advance(step_result.ok)

        if step_result.ok:
            console.print_step_done(env.label, step.name, step_result.duration)
            continue

        failure = StepFailure(
            env=env.label,
            step=step.name,
            cmd=step.run,
            exit_code=step_result.exit_status,
            stdout=step_result.stdout,
            stderr=step_result.stderr,
        )
        result.failed_step_index = i + 1
        result.failed_step = step.name
        result.exit_status = step_result.exit_status
        result.error = failure
        console.print_failure(step.name, failure.message, exit_code=failure.exit_code, output=failure.output)

    result.status = SUCCEEDED if state.phase == SUCCEEDED else FAILED
    return result


@contextmanager
def cache_scope(
    bindings: Sequence[CacheBinding],
    store: Optional[CacheStore],
    *,
    workspace: Path,
    env: EnvironmentDescriptor,
    cancel: Optional[CancelToken] = None,
    os_name: Optional[str] = None,
) -> Iterator[List[CacheState]]:
    """
    Restore every binding on entry; on every exit path save the ones that
    were not an exact hit, unless the run was cancelled.
    """
    if store is None or not bindings:
        yield []
        return

    states = [restore_cache(b, store, workspace=workspace, env=env, os_name=os_name) for b in bindings]
    try:
        yield states
    finally:
        if cancel is not None and cancel.cancelled:
            get_console().print_info(f"[{env.label}] CACHE: save skipped (cancelled)")
        else:
            for binding, state in zip(bindings, states):
                save_cache(binding, state, store, workspace=workspace, env=env)


def run_environment(
    pipeline: Pipeline,
    env: EnvironmentDescriptor,
    *,
    repo_root: str | Path = ".",
    store: Optional[CacheStore] = None,
    work_root: str | Path = settings.WORK_DIR,
    isolate: bool = False,
    trigger: Optional[Trigger] = None,
    slot: int = 0,
    provisioner: Optional[Provisioner] = None,
    cancel: Optional[CancelToken] = None,
    os_name: Optional[str] = None,
) -> RunResult:
    """One execution context: provision, restore caches, run steps, save caches."""
    console = get_console()
    root = Path(repo_root).resolve()
    console.print_env_start(env.label)

    if cancel is not None and cancel.cancelled:
        return RunResult(env=env, status=FAILED, cancelled=True, error=RunCancelled(env.label))

    try:
        if provisioner is None:
            environ = provision_environment(pipeline, env, os_name=os_name)
        else:
            environ = provisioner(pipeline, env)

        workspace = root
        if isolate:
            work = Path(work_root)
            if not work.is_absolute():
                work = root / work
            workspace = prepare_workspace(root, work, env, trigger.ref if trigger else None, slot=slot)
    except EnvironmentProvisionFailure as e:
        console.print_failure(env.label, e.message, hint=e.details.get("hint"), is_env=True)
        return RunResult(env=env, status=FAILED, error=e)
    except OSError as e:
        failure = EnvironmentProvisionFailure(env.label, f"could not prepare workspace: {e}")
        console.print_failure(env.label, failure.message, is_env=True)
        return RunResult(env=env, status=FAILED, error=failure)

    try:
        with cache_scope(
            pipeline.caches, store, workspace=workspace, env=env, cancel=cancel, os_name=os_name
        ) as states:
            result = execute_run(pipeline.steps, env, workspace=workspace, environ=environ, cancel=cancel)
            result.caches = states
    except CIError as e:
        console.print_failure(env.label, e.message, is_env=True)
        return RunResult(env=env, status=FAILED, error=e)

    return result


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_pipeline(
    pipeline: Pipeline,
    trigger: Optional[Trigger] = None,
    *,
    repo_root: str | Path = ".",
    cache_root: str | Path | None = settings.CACHE_DIR,
    work_root: str | Path = settings.WORK_DIR,
    max_workers: int | None = settings.WORKERS,
    isolate: bool | None = None,
    provisioner: Optional[Provisioner] = None,
    cancel: Optional[CancelToken] = None,
    store: Optional[CacheStore] = None,
    os_name: Optional[str] = None,
) -> PipelineResult:
    """
    Run the pipeline once per matrix environment, environments in parallel.

    cache_root=None disables caching. isolate=None gives each environment
    its own workspace copy when there is more than one environment or the
    trigger names a ref.
    """
    console = get_console()
    trigger = trigger or Trigger(event=settings.DEFAULT_EVENT)

    if not pipeline.triggered_by(trigger):
        console.print_plan_skipped(pipeline.name, f"not triggered by {trigger.event}")
        return PipelineResult(pipeline=pipeline.name, trigger=trigger, skipped=True)

    envs = expand_matrix(pipeline.matrix)
    if isolate is None:
        isolate = len(envs) > 1 or trigger.ref is not None

    root = Path(repo_root).resolve()
    if store is None and cache_root is not None:
        cache_path = Path(cache_root)
        store = CacheStore(cache_path if cache_path.is_absolute() else root / cache_path)

    cancel = cancel or CancelToken()
    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)

    results: Dict[int, RunResult] = {}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = {
            pool.submit(
                run_environment,
                pipeline,
                env,
                repo_root=root,
                store=store,
                work_root=work_root,
                isolate=isolate,
                trigger=trigger,
                provisioner=provisioner,
                slot=i,
                cancel=cancel,
                os_name=os_name,
            ): i
            for i, env in enumerate(envs)
        }
        try:
            for fut in as_completed(futures):
                i = futures[fut]
                try:
                    results[i] = fut.result()
                except Exception as e:
                    console.print_exception(e)
                    results[i] = RunResult(env=envs[i], status=FAILED, error=e)
        except KeyboardInterrupt:
            cancel.cancel("interrupted")
            raise

    return PipelineResult(
        pipeline=pipeline.name,
        trigger=trigger,
        runs=[results[i] for i in range(len(envs))],
    )
