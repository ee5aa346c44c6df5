"""Console output formatting utilities for prcheck."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ..model import EnvironmentDescriptor, PipelineResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # environments run on worker threads; keep multi-line blocks together
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        pipeline: str,
        event: str,
        env_count: int,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Repository: {repository}",
            f"Workflow: {workflow}",
            f"Pipeline: {pipeline}",
            f"Trigger: {event}",
            f"Environments: {env_count}",
            "",
        )

    def print_env_start(self, label: str) -> None:
        self._emit(f"\nENVIRONMENT STARTED: {label}")

    def print_step(self, env: str, name: str) -> None:
        """Print step start message."""
        self._emit(f"[{env}] STEP: {name}")

    def print_step_done(self, env: str, name: str, duration: float) -> None:
        self._emit(f"[{env}] ✓ {name} ({duration:.1f}s)")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        output: Optional[str] = None,
        is_env: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Environment or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            output: Captured command output, printed verbatim
            is_env: If True, print "ENVIRONMENT FAILED", otherwise "STEP FAILED"
        """
        prefix = "ENVIRONMENT FAILED" if is_env else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        if output:
            lines.append("Output:")
            lines.extend(f"  {line}" for line in output.splitlines())
        self._emit(*lines)

    def print_cache_hit(self, env: str, path: str, key: str) -> None:
        """Print cache hit message."""
        self._emit(f"[{env}] CACHE: hit {path} ({self._short(key)})")

    def print_cache_miss(self, env: str, path: str, key: str) -> None:
        """Print cache miss message."""
        self._emit(f"[{env}] CACHE: miss {path} ({self._short(key)})")

    def print_cache_saved(self, env: str, path: str, key: str) -> None:
        """Print cache save message."""
        self._emit(f"[{env}] CACHE: saved {path} ({self._short(key)})")

    def print_plan_skipped(self, name: str, reason: str) -> None:
        self._emit(f"  {name} (skipped: {reason})")

    def print_matrix(self, pipeline: str, envs: Iterable["EnvironmentDescriptor"]) -> None:
        lines = [pipeline]
        lines.extend(f"  {env.label}" for env in envs)
        self._emit(*lines)

    def print_results(self, result: "PipelineResult") -> None:
        """Print final results summary, one status per environment."""
        lines = ["", "=" * 40, f"RESULTS: {result.pipeline}", "=" * 40]
        if result.skipped:
            lines.append(f"  skipped (not triggered by {result.trigger.event})")
        for run in result.runs:
            status = "SUCCESS" if run.ok else "FAILED"
            if run.cancelled:
                status = "CANCELLED"
            suffix = ""
            if run.failed_step:
                suffix = f" at step {run.failed_step_index} '{run.failed_step}'"
            lines.append(f"  {run.env.label}: {status}{suffix} ({run.duration:.1f}s)")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_warning(self, message: str) -> None:
        self._emit(f"WARNING: {message}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)

    @staticmethod
    def _short(key: str) -> str:
        return key[:48] + "..." if len(key) > 48 else key


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
