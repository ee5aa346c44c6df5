# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """
    kind: str
    env: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"env={self.env}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class StepFailure(CIError):
    """A step's command exited non-zero."""

    def __init__(self, env: str, step: str, cmd: str, exit_code: int, stdout: str = "", stderr: str = ""):
        super().__init__(
            kind="step_failed",
            env=env,
            step=step,
            message=f"step '{step}' failed (exit={exit_code}): {cmd}",
            details={"exit_code": exit_code},
        )
        self.cmd = cmd
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    @property
    def output(self) -> str:
        return "\n".join(s for s in (self.stdout.rstrip(), self.stderr.rstrip()) if s)


class EnvironmentProvisionFailure(CIError):
    """The execution context for an environment could not be created."""

    def __init__(self, env: str, message: str, **details):
        super().__init__(kind="provision_failed", env=env, step=None, message=message, details=details)


class CacheSaveFailure(CIError):
    """Persisting a cache blob failed. Never changes a run's status."""

    def __init__(self, key: str, path: str, reason: str):
        super().__init__(
            kind="cache_save_failed",
            env="",
            step=None,
            message=f"could not save cache {key}: {reason}",
            details={"path": path},
        )
        self.key = key


class RunCancelled(CIError):
    def __init__(self, env: str, step: str | None = None, reason: str = "cancelled"):
        super().__init__(kind="cancelled", env=env, step=step, message=reason)


class DeclarationError(CIError):
    """A workflow declaration could not be loaded or validated."""

    def __init__(self, source: str, message: str):
        super().__init__(kind="invalid_declaration", env="", step=None, message=message, details={"source": source})
