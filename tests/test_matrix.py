"""
Tests for matrix expansion and the fail-fast run state machine.
"""

import pytest

from prcheck.dsl import build, cache, expand_matrix, pipeline, sh
from prcheck.model import EnvironmentDescriptor, RunState


class TestExpandMatrix:
    """Test suite for expand_matrix."""

    def test_single_combination(self):
        envs = expand_matrix({"toolchain": ["stable"], "platform": ["ubuntu-latest"]})

        assert len(envs) == 1
        assert envs[0].as_dict() == {"toolchain": "stable", "platform": "ubuntu-latest"}
        assert envs[0].values == (("toolchain", "stable"), ("platform", "ubuntu-latest"))

    def test_outer_axis_varies_slowest(self):
        envs = expand_matrix({"toolchain": ["stable", "nightly"], "platform": ["ubuntu", "macos"]})

        assert [(e.get("toolchain"), e.get("platform")) for e in envs] == [
            ("stable", "ubuntu"),
            ("stable", "macos"),
            ("nightly", "ubuntu"),
            ("nightly", "macos"),
        ]

    def test_two_by_one(self):
        envs = expand_matrix({"toolchain": ["stable", "nightly"], "platform": ["ubuntu-latest"]})

        assert len(envs) == 2
        assert len(set(envs)) == 2

    def test_empty_axis_rejected(self):
        with pytest.raises(ValueError, match="toolchain"):
            expand_matrix({"toolchain": [], "platform": ["ubuntu-latest"]})

    def test_no_axes_is_one_default_environment(self):
        envs = expand_matrix({})

        assert envs == [EnvironmentDescriptor()]
        assert envs[0].label == "default"

    def test_label_and_slug(self):
        env = expand_matrix({"toolchain": ["1.70/beta"], "platform": ["ubuntu-latest"]})[0]

        assert env.label == "toolchain=1.70/beta, platform=ubuntu-latest"
        assert "/" not in env.slug
        assert env.get("missing", "fallback") == "fallback"


class TestRunState:
    """Test suite for the Pending -> Running -> terminal transitions."""

    def test_all_steps_succeed(self):
        state = RunState(3)
        state.start()
        assert (state.phase, state.index) == ("running", 0)

        state.advance(True)
        state.advance(True)
        assert (state.phase, state.index) == ("running", 2)

        state.advance(True)
        assert state.phase == "succeeded"
        assert state.terminal

    def test_failure_keeps_failing_index(self):
        state = RunState(3)
        state.start()
        state.advance(True)
        state.advance(False)

        assert state.phase == "failed"
        assert state.index == 1
        assert repr(state) == "RunState(failed(1))"

    def test_empty_run_succeeds_immediately(self):
        state = RunState(0)
        state.start()

        assert state.phase == "succeeded"

    def test_no_transition_out_of_terminal_state(self):
        state = RunState(1)
        state.start()
        state.advance(False)

        with pytest.raises(RuntimeError):
            state.advance(True)
        with pytest.raises(RuntimeError):
            state.start()


class TestDsl:
    """Test suite for the pipeline helpers."""

    def test_pipeline_applies_default_shell_and_cwd(self):
        p = pipeline(
            "verify",
            sh("fmt", "cargo fmt -- --check"),
            sh("test", "cargo test", cwd="crate", shell="sh"),
            shell="bash",
            cwd="workspace",
        )

        assert [(s.shell, s.cwd) for s in p.steps] == [("bash", "workspace"), ("sh", "crate")]
        assert p.on == ["pull_request"]

    def test_pipeline_needs_steps(self):
        with pytest.raises(ValueError):
            pipeline("empty")

    def test_cache_key_template(self):
        binding = cache("~/.cargo/registry", "cargo-registry", hash_files=["**/Cargo.lock"])

        assert binding.key == "${{ runner.os }}-cargo-registry-${{ hashFiles('**/Cargo.lock') }}"
        assert binding.label == "cargo-registry"

    def test_builder(self):
        p = (
            build("Test")
            .on("pull_request")
            .axis("rust-toolchain", "stable")
            .axis("platform", "ubuntu-latest")
            .runs_on("${{ matrix.platform }}")
            .cache("target", "cargo-build-target", "**/Cargo.lock")
            .define_step("fmt", "cargo fmt -- --check", shell="bash")
            .build()
        )

        assert p.matrix == {"rust-toolchain": ["stable"], "platform": ["ubuntu-latest"]}
        assert p.caches[0].path == "target"
        assert p.steps[0].shell == "bash"

    def test_builder_needs_steps(self):
        with pytest.raises(ValueError):
            build("nothing").build()
