from __future__ import annotations

import pytest

from relayci.dsl import build, job, matrix, sh, step
from relayci.step_workflows.cargo import cargo_step, component_step, toolchain_step


def test_sh_runs_through_the_shell() -> None:
    s = sh("Clippy", "cargo clippy -- -Dwarnings")
    assert s.command == "sh"
    assert s.args == ("-c", "cargo clippy -- -Dwarnings")


def test_job_applies_default_cwd() -> None:
    spec = job("test", step("a", "cargo", "test"), step("b", "cargo", "doc", cwd="docs"), cwd="crates/sframe")
    assert [s.cwd for s in spec.steps] == ["crates/sframe", "docs"]


def test_job_needs_steps() -> None:
    with pytest.raises(ValueError):
        job("empty")


def test_matrix_rejects_empty_axis() -> None:
    assert matrix(rust=["stable", "nightly"]) == {"rust": ["stable", "nightly"]}
    with pytest.raises(ValueError):
        matrix(rust=[])


def test_builder() -> None:
    spec = (
        build("bench")
        .depends_on("test")
        .define_requirements("cargo")
        .define_step("Bench", "cargo bench")
        .with_env(RUST_BACKTRACE=1)
        .with_matrix(rust=["nightly"])
        .optional()
        .build()
    )
    assert spec.needs == ["test"]
    assert spec.requires == ["cargo"]
    assert spec.env == {"RUST_BACKTRACE": "1"}
    assert spec.matrix == {"rust": ["nightly"]}
    assert spec.required is False


def test_cargo_helpers() -> None:
    assert toolchain_step("stable", target="wasm32-unknown-unknown").command_line == (
        "rustup toolchain install stable --profile minimal --target wasm32-unknown-unknown"
    )
    assert component_step("clippy").command_line == "rustup component add clippy"
    clippy = cargo_step("Clippy", "clippy", "--all-targets --all-features -- -Dwarnings", toolchain="stable")
    assert clippy.command == "cargo"
    assert clippy.args == ("+stable", "clippy", "--all-targets", "--all-features", "--", "-Dwarnings")
