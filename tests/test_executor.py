from __future__ import annotations

import shutil
import threading
import time
from pathlib import Path

import pytest
from conftest import FakeRunner

from relayci.dag import build_graph
from relayci.dsl import job, matrix, sh, step
from relayci.executor import SubprocessRunner, execute_job, log_tail
from relayci.model import JobStatus


def _instance(spec, index: int = 0):
    return build_graph([spec], workflow="build_test")[index]


def test_steps_run_in_order(tmp_path: Path) -> None:
    runner = FakeRunner()
    inst = _instance(job("test", step("check", "cargo", "check"), step("test", "cargo", "test")))
    result = execute_job(inst, runner, repo_root=tmp_path)
    assert result.status is JobStatus.SUCCEEDED
    assert runner.calls == ["cargo check", "cargo test"]
    assert [s.name for s in result.steps] == ["check", "test"]
    assert result.failure is None


def test_first_failing_step_stops_the_job(tmp_path: Path) -> None:
    runner = FakeRunner(exit_codes={"cargo test": 101})
    inst = _instance(job(
        "test",
        step("check", "cargo", "check"),
        step("test", "cargo", "test"),
        step("clippy", "cargo", "clippy"),
    ))
    result = execute_job(inst, runner, repo_root=tmp_path)

    assert result.status is JobStatus.FAILED
    assert runner.calls == ["cargo check", "cargo test"]
    assert result.failure.kind == "StepFailed"
    assert result.failure.step == "test"
    assert result.failure.details["exit_code"] == 101
    assert "cargo test: failed" in result.failure.details["log_tail"]
    # the failing step's output is kept
    assert result.steps[-1].exit_code == 101
    assert "cargo test: failed" in result.steps[-1].output


def test_continue_on_error_step(tmp_path: Path) -> None:
    runner = FakeRunner(exit_codes={"cargo fmt --check": 1})
    inst = _instance(job(
        "lint",
        step("fmt", "cargo", "fmt", "--check", continue_on_error=True),
        step("clippy", "cargo", "clippy"),
    ))
    result = execute_job(inst, runner, repo_root=tmp_path)
    assert result.status is JobStatus.SUCCEEDED
    assert runner.calls == ["cargo fmt --check", "cargo clippy"]
    assert result.steps[0].continued
    assert not result.steps[1].continued


def test_missing_tools_fail_before_any_step(tmp_path: Path) -> None:
    runner = FakeRunner()
    inst = _instance(job("wasm", step("build", "wasm-pack", "build"), requires=["relayci-no-such-tool"]))
    result = execute_job(inst, runner, repo_root=tmp_path)
    assert result.status is JobStatus.FAILED
    assert result.failure.kind == "MissingTools"
    assert "relayci-no-such-tool" in result.failure.details["hints"]
    assert runner.calls == []


def test_missing_working_directory(tmp_path: Path) -> None:
    runner = FakeRunner()
    inst = _instance(job("test", step("t", "cargo", "test", cwd="crates/missing")))
    result = execute_job(inst, runner, repo_root=tmp_path)
    assert result.status is JobStatus.FAILED
    assert result.failure.kind == "BadWorkingDirectory"
    assert runner.calls == []


def test_cancel_before_start(tmp_path: Path) -> None:
    runner = FakeRunner()
    cancel = threading.Event()
    cancel.set()
    result = execute_job(_instance(job("t", step("t", "cargo", "test"))), runner, repo_root=tmp_path, cancel=cancel)
    assert result.status is JobStatus.CANCELLED
    assert result.failure.kind == "CancellationRequested"
    assert runner.calls == []


def test_cancel_while_running(tmp_path: Path) -> None:
    runner = FakeRunner(delay=5.0)
    cancel = threading.Event()
    timer = threading.Timer(0.05, cancel.set)
    timer.start()
    try:
        result = execute_job(
            _instance(job("t", step("a", "cargo", "test"), step("b", "cargo", "doc"))),
            runner,
            repo_root=tmp_path,
            cancel=cancel,
        )
    finally:
        timer.cancel()
    assert result.status is JobStatus.CANCELLED
    assert runner.calls == ["cargo test"]
    # the interrupted step is still reported
    assert [(s.name, s.exit_code) for s in result.steps] == [("a", -15)]


def test_timeout_fails_the_job(tmp_path: Path) -> None:
    runner = FakeRunner(delay=5.0)
    result = execute_job(_instance(job("t", step("slow", "cargo", "bench"))), runner, repo_root=tmp_path, timeout=0.5)
    assert result.status is JobStatus.FAILED
    assert result.failure.kind == "Timeout"
    assert [s.name for s in result.steps] == ["slow"]
    assert result.failure.details["command"] == "cargo bench"


def test_matrix_and_job_env(tmp_path: Path) -> None:
    runner = FakeRunner()
    spec = job(
        "check",
        sh("check", "cargo +$MATRIX_RUST check", env={"RUSTFLAGS": "-Dwarnings"}),
        matrix=matrix(rust=["stable", "nightly"]),
        env={"CARGO_TERM_COLOR": "always"},
    )
    execute_job(_instance(spec, 1), runner, repo_root=tmp_path)
    env = runner.envs[0]
    assert env["MATRIX_RUST"] == "nightly"
    assert env["CARGO_TERM_COLOR"] == "always"
    assert env["RUSTFLAGS"] == "-Dwarnings"
    assert env["RELAYCI_JOB"] == "check"
    assert runner.calls == ["sh -c cargo +$MATRIX_RUST check"]


def test_log_tail_keeps_last_lines() -> None:
    text = "\n".join(f"line {i}" for i in range(100))
    assert log_tail(text, 3) == "line 97\nline 98\nline 99"


needs_sleep = pytest.mark.skipif(shutil.which("sleep") is None, reason="needs a sleep binary")


@needs_sleep
def test_subprocess_runner_terminates_on_cancel() -> None:
    cancel = threading.Event()
    cancel.set()
    started = time.monotonic()
    result = SubprocessRunner().run("sleep", ["5"], cancel=cancel)

    assert result.cancelled
    assert not result.timed_out
    assert result.exit_code != 0
    assert time.monotonic() - started < 4


@needs_sleep
def test_subprocess_runner_terminates_at_deadline() -> None:
    started = time.monotonic()
    result = SubprocessRunner().run("sleep", ["5"], timeout=0.3)

    assert result.timed_out
    assert not result.cancelled
    assert result.exit_code != 0
    assert time.monotonic() - started < 4


@pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")
def test_subprocess_runner_captures_output(tmp_path: Path) -> None:
    result = SubprocessRunner().run("sh", ["-c", "echo out; echo err >&2; exit 3"], cwd=str(tmp_path))
    assert result.exit_code == 3
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
