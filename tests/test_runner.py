"""
Tests for step execution, the fail-fast run loop and per-environment runs.

Steps are POSIX shell commands that append their name to calls.txt so the
order (and absence) of executions can be checked.
"""

import threading
import time

import pytest

from prcheck.dsl import cache, pipeline, sh
from prcheck.errors import EnvironmentProvisionFailure, RunCancelled, StepFailure
from prcheck.model import EnvironmentDescriptor, Trigger
from prcheck import settings
from prcheck.runner import (
    CancelToken,
    execute_run,
    platform_family,
    provision_environment,
    run_environment,
    run_pipeline,
    run_step,
)

ENV = EnvironmentDescriptor(values=(("toolchain", "stable"), ("platform", "ubuntu-latest")))


def logged(name, exit_code=0):
    cmd = f"echo {name} >> calls.txt"
    if exit_code:
        cmd += f" && exit {exit_code}"
    return sh(name, cmd)


class TestRunStep:
    """Test suite for run_step."""

    def test_success_captures_output(self, repo):
        result = run_step(sh("hello", "echo hello"), ENV, workspace=repo)

        assert result.ok
        assert result.exit_status == 0
        assert result.stdout.strip() == "hello"
        assert result.duration >= 0

    def test_non_zero_exit_is_a_result(self, repo):
        result = run_step(sh("boom", "echo oops >&2; exit 7"), ENV, workspace=repo)

        assert not result.ok
        assert result.exit_status == 7
        assert "oops" in result.stderr

    def test_runs_in_step_cwd(self, repo):
        result = run_step(sh("where", "ls main.rs", cwd="src"), ENV, workspace=repo)

        assert result.ok

    def test_missing_cwd(self, repo):
        result = run_step(sh("where", "true", cwd="nope"), ENV, workspace=repo)

        assert result.exit_status == 127
        assert "nope" in result.stderr

    def test_bash_uses_pipefail(self, repo):
        result = run_step(sh("pipe", "false | true", shell="bash"), ENV, workspace=repo)

        assert not result.ok

    def test_matrix_expression_in_command(self, repo):
        result = run_step(sh("which", "echo ${{ matrix.toolchain }}"), ENV, workspace=repo)

        assert result.stdout.strip() == "stable"

    def test_uses_given_environment(self, repo):
        result = run_step(sh("var", 'echo "$GREETING"'), ENV, workspace=repo, environ={"GREETING": "hi", "PATH": "/usr/bin:/bin"})

        assert result.stdout.strip() == "hi"

    def test_cancel_terminates_running_command(self, repo):
        token = CancelToken()
        threading.Timer(0.3, token.cancel, args=("superseded",)).start()

        started = time.monotonic()
        with pytest.raises(RunCancelled) as exc:
            run_step(sh("long", "sleep 30"), ENV, workspace=repo, cancel=token, poll_interval=0.05)

        assert time.monotonic() - started < 10
        assert exc.value.message == "superseded"

    def test_zero_output_tail_keeps_nothing(self, repo, monkeypatch):
        monkeypatch.setattr(settings, "OUTPUT_TAIL", 0)

        result = run_step(sh("noisy", "echo out; echo err >&2"), ENV, workspace=repo)

        assert result.ok
        assert (result.stdout, result.stderr) == ("", "")


class TestExecuteRun:
    """Test suite for the fail-fast run loop."""

    @pytest.mark.parametrize("k", [1, 2, 3])
    def test_stops_at_first_failure(self, repo, calls, k):
        steps = [logged(f"s{i}", exit_code=3 if i == k else 0) for i in range(1, 4)]

        result = execute_run(steps, ENV, workspace=repo)

        assert result.status == "failed"
        assert result.failed_step_index == k
        assert result.failed_step == f"s{k}"
        assert result.exit_status == 3
        assert calls() == [f"s{i}" for i in range(1, k + 1)]
        assert len(result.steps) == k

    def test_all_steps_succeed_in_order(self, repo, calls):
        steps = [logged(n) for n in ("fmt", "check", "test")]

        result = execute_run(steps, ENV, workspace=repo)

        assert result.status == "succeeded"
        assert result.ok
        assert result.failed_step_index is None
        assert calls() == ["fmt", "check", "test"]
        assert [s.name for s in result.steps] == ["fmt", "check", "test"]

    def test_fmt_check_test_with_failing_check(self, repo, calls):
        steps = [logged("fmt"), sh("check", "echo check >> calls.txt; echo 'error[E0308]' >&2; exit 101"), logged("test")]

        result = execute_run(steps, ENV, workspace=repo)

        assert result.status == "failed"
        assert result.failed_step_index == 2
        assert "test" not in calls()
        assert isinstance(result.error, StepFailure)
        assert result.error.exit_code == 101
        assert "error[E0308]" in result.error.output
        assert result.error.env == ENV.label
        assert f"env={ENV.label}" in str(result.error)

    def test_cancelled_before_start_runs_nothing(self, repo, calls):
        token = CancelToken()
        token.cancel()

        result = execute_run([logged("fmt")], ENV, workspace=repo, cancel=token)

        assert result.status == "failed"
        assert result.cancelled
        assert calls() == []


class TestProvisioning:
    """Test suite for the default provisioner."""

    def test_platform_family(self):
        assert platform_family("ubuntu-latest") == "Linux"
        assert platform_family("macos-14") == "macOS"
        assert platform_family("windows-2022") == "Windows"
        assert platform_family("self-hosted") is None

    def test_matrix_variables(self):
        p = pipeline("p", sh("x", "true"), env={"CARGO_TERM_COLOR": "always"})
        env = EnvironmentDescriptor(values=(("rust-toolchain", "nightly"), ("platform", "ubuntu-latest")))

        environ = provision_environment(p, env, os_name="Linux")

        assert environ["MATRIX_RUST_TOOLCHAIN"] == "nightly"
        assert environ["RUSTUP_TOOLCHAIN"] == "nightly"
        assert environ["RUNNER_OS"] == "Linux"
        assert environ["CARGO_TERM_COLOR"] == "always"

    def test_platform_mismatch(self):
        p = pipeline("p", sh("x", "true"), runs_on="${{ matrix.platform }}")

        with pytest.raises(EnvironmentProvisionFailure, match="Linux host"):
            provision_environment(p, ENV, os_name="Windows")

    def test_missing_tool(self):
        p = pipeline("p", sh("x", "true"), requires=["definitely-not-installed-tool"])

        with pytest.raises(EnvironmentProvisionFailure) as exc:
            provision_environment(p, ENV, os_name="Linux")
        assert "definitely-not-installed-tool" in exc.value.message

    def test_provision_failure_runs_no_steps(self, repo, calls):
        p = pipeline("p", logged("fmt"), requires=["definitely-not-installed-tool"])

        result = run_environment(p, ENV, repo_root=repo, os_name="Linux")

        assert result.status == "failed"
        assert isinstance(result.error, EnvironmentProvisionFailure)
        assert result.steps == []
        assert calls() == []


class TestRunEnvironment:
    """Test suite for one execution context with caches."""

    def test_cancel_skips_cache_save(self, repo, store, provisioner):
        token = CancelToken()
        p = pipeline(
            "p",
            sh("build", "mkdir -p target && echo out > target/bin && sleep 30"),
            caches=[cache("target", "build", hash_files=["Cargo.lock"])],
        )
        threading.Timer(0.5, token.cancel).start()

        result = run_environment(p, ENV, repo_root=repo, store=store, provisioner=provisioner, cancel=token)

        assert result.cancelled
        assert result.status == "failed"
        assert store.keys() == []

    def test_save_failure_keeps_success(self, repo, store, provisioner, monkeypatch):
        def broken_writer(key, path=None):
            raise OSError("disk full")

        monkeypatch.setattr(store, "writer", broken_writer)
        p = pipeline(
            "p",
            sh("build", "mkdir -p target && echo out > target/bin"),
            caches=[cache("target", "build", hash_files=["Cargo.lock"])],
        )

        result = run_environment(p, ENV, repo_root=repo, store=store, provisioner=provisioner)

        assert result.status == "succeeded"


class TestRunPipeline:
    """Test suite for run_pipeline."""

    def test_independent_environments(self, repo, tmp_path, provisioner):
        p = pipeline(
            "Test",
            sh("fmt", "true"),
            sh("check", 'test "$MATRIX_TOOLCHAIN" != nightly'),
            sh("test", "true"),
            matrix={"toolchain": ["stable", "nightly"], "platform": ["ubuntu-latest"]},
        )

        result = run_pipeline(
            p,
            Trigger(event="pull_request"),
            repo_root=repo,
            cache_root=tmp_path / "cache",
            provisioner=provisioner,
        )

        assert [r.env.get("toolchain") for r in result.runs] == ["stable", "nightly"]
        assert [r.status for r in result.runs] == ["succeeded", "failed"]
        assert result.runs[1].failed_step_index == 2
        assert not result.ok
        assert result.exit_code == 1
        # each environment got its own workspace
        assert (repo / ".prcheck" / "work" / "00-stable-ubuntu-latest" / "Cargo.lock").exists()
        assert (repo / ".prcheck" / "work" / "01-nightly-ubuntu-latest" / "Cargo.lock").exists()

    def test_single_environment_runs_in_place(self, repo, calls, provisioner):
        p = pipeline(
            "Test",
            logged("fmt"),
            logged("check"),
            logged("test"),
            matrix={"toolchain": ["stable"], "platform": ["ubuntu-latest"]},
        )

        result = run_pipeline(p, Trigger(event="pull_request"), repo_root=repo, cache_root=None, provisioner=provisioner)

        assert result.ok
        assert result.exit_code == 0
        assert len(result.runs) == 1
        assert calls() == ["fmt", "check", "test"]

    def test_other_events_are_skipped(self, repo, calls, provisioner):
        p = pipeline("Test", logged("fmt"), on=["pull_request"])

        result = run_pipeline(p, Trigger(event="push"), repo_root=repo, cache_root=None, provisioner=provisioner)

        assert result.skipped
        assert result.runs == []
        assert result.exit_code == 0
        assert calls() == []

    def test_provision_failure_does_not_block_other_environments(self, repo, tmp_path, provisioner):
        def refuse_nightly(p, env):
            if env.get("toolchain") == "nightly":
                raise EnvironmentProvisionFailure(env.label, "toolchain nightly not installed")
            return provisioner(p, env)

        p = pipeline(
            "Test",
            logged("fmt"),
            logged("test"),
            matrix={"toolchain": ["stable", "nightly"], "platform": ["ubuntu-latest"]},
        )

        result = run_pipeline(p, Trigger(event="pull_request"), repo_root=repo, cache_root=None, provisioner=refuse_nightly)

        stable, nightly = result.runs
        assert stable.status == "succeeded"
        assert [s.name for s in stable.steps] == ["fmt", "test"]
        assert nightly.status == "failed"
        assert isinstance(nightly.error, EnvironmentProvisionFailure)
        assert nightly.steps == []
        assert result.exit_code == 1

    def test_duplicate_environments_get_separate_workspaces(self, repo, provisioner):
        p = pipeline(
            "Test",
            sh("claim", "test ! -e marker && touch marker && sleep 0.5 && test -e marker"),
            matrix={"toolchain": ["stable", "stable"]},
        )

        result = run_pipeline(p, Trigger(event="pull_request"), repo_root=repo, cache_root=None, provisioner=provisioner)

        assert [r.status for r in result.runs] == ["succeeded", "succeeded"]
        work = repo / ".prcheck" / "work"
        assert (work / "00-stable" / "marker").exists()
        assert (work / "01-stable" / "marker").exists()

    def test_colliding_slugs_get_separate_workspaces(self, repo, provisioner):
        p = pipeline(
            "Test",
            sh("claim", "test ! -e marker && touch marker"),
            matrix={"a": ["x", "x-y"], "b": ["y-z", "z"]},
        )

        result = run_pipeline(p, Trigger(event="pull_request"), repo_root=repo, cache_root=None, provisioner=provisioner)

        assert result.ok
        dirs = sorted(d.name for d in (repo / ".prcheck" / "work").iterdir())
        assert dirs == ["00-x-y-z", "01-x-z", "02-x-y-y-z", "03-x-y-z"]
