# cli.py
from __future__ import annotations

import signal
import subprocess
import sys
from pathlib import Path

import click

from prcheck import settings
from prcheck.cache import CacheStore
from prcheck.dsl import expand_matrix
from prcheck.errors import CIError
from prcheck.git_facts.git import get_remote_url, is_git_repo, repo_root
from prcheck.model import Trigger
from prcheck.runner import CancelToken, load_workflow, run_pipeline
from prcheck.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("prcheck_workflow.py", ".prcheck.yml", ".prcheck.yaml")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    found = {current_dir / name for name in DEFAULT_WORKFLOWS if (current_dir / name).exists()}
    found.update(current_dir.glob("*_workflow.py"))
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  prcheck run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *[f"  {n}" for n in DEFAULT_WORKFLOWS], "  *_workflow.py"],
            suggestion="Create a workflow file:\n  prcheck_workflow.py\n\nOr specify a workflow explicitly:\n  prcheck run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  prcheck run --workflow prcheck_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _load(ctx, workflow):
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except (CIError, TypeError, ValueError, FileNotFoundError) as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """prcheck: matrix build-verification runner with content-keyed caches."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help="Workflow file (.py or .yml); defaults to prcheck_workflow.py / .prcheck.yml if present",
)
@click.option("--event", default=settings.DEFAULT_EVENT, show_default=True, help="Trigger event name")
@click.option("--ref", default=None, help="Git ref to check out in each environment's workspace")
@click.option("--workers", default=settings.WORKERS, type=int, help="Number of environments run in parallel")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--no-cache", is_flag=True, default=False, help="Disable cache restore/save")
@click.option("--work-dir", default=settings.WORK_DIR, show_default=True, help="Per-environment workspace root")
@click.option(
    "--isolate/--no-isolate",
    default=None,
    help="Run each environment in its own workspace copy (default: only for multi-environment runs)",
)
@click.pass_context
def run(ctx, workflow, event, ref, workers, cache_dir, no_cache, work_dir, isolate):
    """Run the workflow's pipelines, one run per matrix environment."""
    console = get_console()
    workflow_path, pipelines = _load(ctx, workflow)

    try:
        repo_name = get_remote_url("origin").rstrip("/").split("/")[-1].replace(".git", "")
    except (subprocess.CalledProcessError, FileNotFoundError):
        repo_name = Path(".").resolve().name

    root = repo_root() if is_git_repo() else Path(".").resolve()
    trigger = Trigger(event=event, ref=ref)
    cancel = CancelToken()
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: cancel.cancel(f"received signal {signum}"))

    exit_code = 0
    try:
        for p in pipelines:
            console.print_run_started(
                repository=repo_name,
                workflow=workflow_path.name,
                pipeline=p.name,
                event=event,
                env_count=len(expand_matrix(p.matrix)),
            )
            result = run_pipeline(
                p,
                trigger,
                repo_root=root,
                cache_root=None if no_cache else cache_dir,
                work_root=work_dir,
                max_workers=workers,
                isolate=isolate,
                cancel=cancel,
            )
            console.print_results(result)
            exit_code = max(exit_code, result.exit_code)
            if cancel.cancelled:
                break
    except KeyboardInterrupt:
        cancel.cancel("interrupted")
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except (CIError, ValueError) as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)

    sys.exit(exit_code)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py or .yml)")
@click.pass_context
def matrix(ctx, workflow):
    """Print the environments each pipeline expands to."""
    console = get_console()
    _path, pipelines = _load(ctx, workflow)
    try:
        for p in pipelines:
            console.print_matrix(p.name, expand_matrix(p.matrix))
    except ValueError as e:
        console.print_exception(e)
        sys.exit(1)


@cli.group(name="cache")
def cache_group():
    """Inspect or prune the local cache store."""


@cache_group.command(name="ls")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
def cache_ls(cache_dir):
    """List cached keys."""
    console = get_console()
    for key in CacheStore(cache_dir).keys():
        console.print_info(key)


@cache_group.command(name="prune")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--keep", default=3, show_default=True, type=int, help="Number of newest blobs to keep")
def cache_prune(cache_dir, keep):
    """Delete all but the newest cache blobs."""
    console = get_console()
    removed = CacheStore(cache_dir).prune(keep=keep)
    console.print_info(f"Removed {len(removed)} cache blob(s)")


if __name__ == "__main__":
    cli()
