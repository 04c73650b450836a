# executor.py
from __future__ import annotations

import os
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from . import settings
from .errors import CancellationRequested, CIError, JobTimeout, StepExecutionFailure
from .model import JobInstance, JobResult, JobStatus, StepResult, StepSpec
from .ui.console import Console, get_console

TOOL_HINTS = {
    "cargo": "Install Rust via rustup (https://rustup.rs) or fix PATH.",
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "git": "Install Git or fix PATH.",
    "wasm-pack": "Install wasm-pack (cargo install wasm-pack).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

# How often a running command checks for cancellation / its deadline.
POLL_INTERVAL = 0.2


# ----------------------------------------------------------------------
# Command execution boundary
# ----------------------------------------------------------------------

@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False


class CommandRunner(Protocol):
    def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CommandResult: ...


class SubprocessRunner:
    """
    Runs commands as child processes, no shell.

    Cancellation and the deadline are cooperative: the child is asked to
    terminate and then waited for; it is never killed.
    """

    def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CommandResult:
        proc = subprocess.Popen(
            [command, *args],
            cwd=cwd,
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        deadline = time.monotonic() + timeout if timeout is not None else None
        timed_out = cancelled = False

        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if timed_out or cancelled:
                    continue  # already asked to stop; wait for it
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    proc.terminate()
                elif deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                    proc.terminate()

        return CommandResult(
            exit_code=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            timed_out=timed_out,
            cancelled=cancelled,
        )


# ----------------------------------------------------------------------
# Preflight
# ----------------------------------------------------------------------

def _preflight(instance: JobInstance, repo_root: Path) -> None:
    missing = [t for t in instance.spec.requires if shutil.which(t) is None]
    if missing:
        hints = {t: TOOL_HINTS.get(t, "Install it and ensure it is on PATH.") for t in missing}
        raise CIError(
            kind="MissingTools",
            job=instance.name,
            step=None,
            message=f"Required tools not found: {', '.join(missing)}",
            details={"hints": hints},
        )

    for s in instance.steps:
        cwd = repo_root / (s.cwd or ".")
        if not cwd.is_dir():
            raise CIError(
                kind="BadWorkingDirectory",
                job=instance.name,
                step=s.name,
                message="Step cwd does not exist",
                details={"cwd": str(cwd)},
            )


def job_env(instance: JobInstance) -> Dict[str, str]:
    env = os.environ.copy()
    env.update(instance.spec.env)
    for axis, value in instance.binding:
        env[f"MATRIX_{axis.upper().replace('-', '_')}"] = value
    env["RELAYCI_JOB"] = instance.spec.name
    env["RELAYCI_RUNS_ON"] = instance.spec.runs_on
    return env


def job_env_for_release(name: str, version: str) -> Dict[str, str]:
    env = os.environ.copy()
    env["RELAYCI_JOB"] = name
    env["RELAYCI_RELEASE_VERSION"] = version
    return env


def log_tail(text: str, lines: int = settings.LOG_TAIL_LINES) -> str:
    return "\n".join(text.strip().splitlines()[-lines:])


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def run_step(
    job_name: str,
    step: StepSpec,
    runner: CommandRunner,
    *,
    repo_root: Path,
    env: Dict[str, str],
    deadline: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
) -> StepResult:
    """
    Run one step and return its result.

    Raises StepExecutionFailure on a non-zero exit unless the step
    continues on error, CancellationRequested if the run was cancelled
    while it ran, and JobTimeout when the job budget ran out.
    """
    cwd = (repo_root / (step.cwd or ".")).resolve()
    step_env = dict(env)
    step_env.update(step.env)

    timeout = None
    if deadline is not None:
        timeout = max(0.0, deadline - time.monotonic())

    started = time.monotonic()
    try:
        completed = runner.run(
            step.command,
            list(step.args),
            cwd=str(cwd),
            env=step_env,
            timeout=timeout,
            cancel=cancel,
        )
    except OSError as e:
        raise CIError(
            kind="SpawnFailed",
            job=job_name,
            step=step.name,
            message=str(e),
            details={"command": step.command_line, "cwd": str(cwd)},
        )

    result = StepResult(
        name=step.name,
        command=step.command_line,
        exit_code=completed.exit_code,
        stdout=completed.stdout,
        stderr=completed.stderr,
        duration=time.monotonic() - started,
    )

    if completed.cancelled:
        raise CancellationRequested(job=job_name, step=step.name, result=result)
    if completed.timed_out:
        raise JobTimeout(job_name, step.name, step.command_line, log_tail(result.output), result=result)

    if completed.exit_code != 0:
        if step.continue_on_error:
            result.continued = True
            return result
        raise StepExecutionFailure(
            job=job_name,
            step=step.name,
            cmd=step.command_line,
            exit_code=completed.exit_code,
            log_tail=log_tail(result.output),
            cwd=str(cwd),
            result=result,
        )
    return result


def execute_job(
    instance: JobInstance,
    runner: CommandRunner,
    *,
    repo_root: str | Path = ".",
    cancel: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
    console: Optional[Console] = None,
) -> JobResult:
    """
    Execute a single job instance:
      1) preflight checks (tools, directories)
      2) run steps in order, fail-fast
      3) return a JobResult; step problems never escape as exceptions
    """
    console = console or get_console()
    root = Path(repo_root).resolve()
    started = time.monotonic()
    deadline = started + timeout if timeout else None
    steps: List[StepResult] = []

    def finish(status: JobStatus, failure: Optional[CIError] = None) -> JobResult:
        return JobResult(
            instance_id=instance.id,
            status=status,
            steps=steps,
            failure=failure,
            duration=time.monotonic() - started,
        )

    console.print_job_start(instance.name)
    try:
        _preflight(instance, root)
        env = job_env(instance)

        for step in instance.steps:
            if cancel is not None and cancel.is_set():
                raise CancellationRequested(job=instance.name, step=step.name)
            if deadline is not None and time.monotonic() >= deadline:
                raise JobTimeout(instance.name, step.name)

            console.print_step(instance.name, step.name)
            try:
                result = run_step(
                    instance.name,
                    step,
                    runner,
                    repo_root=root,
                    env=env,
                    deadline=deadline,
                    cancel=cancel,
                )
            except (StepExecutionFailure, JobTimeout, CancellationRequested) as e:
                if e.result is not None:
                    steps.append(e.result)
                raise
            steps.append(result)
            if result.continued:
                console.print_step_continued(instance.name, step.name, result.exit_code)

    except CancellationRequested as e:
        return finish(JobStatus.CANCELLED, e)
    except CIError as e:
        return finish(JobStatus.FAILED, e)

    return finish(JobStatus.SUCCEEDED)
