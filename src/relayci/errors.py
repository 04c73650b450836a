# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the JSON run report
      - debugging without full tracebacks
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "job": self.job,
            "step": self.step,
            "message": self.message,
            "details": {k: v for k, v in self.details.items()},
        }


# ----------------------------------------------------------------------
# Construction-time errors (abort the whole run before any job starts)
# ----------------------------------------------------------------------

class MalformedTriggerRule(CIError):
    def __init__(self, workflow: str, message: str, **details):
        super().__init__(
            kind="MalformedTriggerRule",
            job=workflow,
            step=None,
            message=message,
            details=details,
        )


class InvalidWorkflow(CIError):
    def __init__(self, source: str, message: str, **details):
        super().__init__(
            kind="InvalidWorkflow",
            job=source,
            step=None,
            message=message,
            details=details,
        )


class InvalidGraph(CIError):
    def __init__(self, message: str, *, job: str = "<graph>", kind: str = "InvalidGraph", **details):
        super().__init__(kind=kind, job=job, step=None, message=message, details=details)


class CycleDetected(InvalidGraph):
    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Job dependencies form a cycle: {' -> '.join(self.cycle)}",
            kind="CycleDetected",
            cycle=self.cycle,
        )


# ----------------------------------------------------------------------
# Run-time errors (local to one job instance or to the release)
# ----------------------------------------------------------------------

class StepExecutionFailure(CIError):
    def __init__(self, job: str, step: str, cmd: str, exit_code: int, log_tail: str, cwd: str = ".", result=None):
        self.exit_code = exit_code
        self.log_tail = log_tail
        self.result = result  # the StepResult with full output
        super().__init__(
            kind="StepFailed",
            job=job,
            step=step,
            message=f"Command exited with code {exit_code}",
            details={
                "command": cmd,
                "cwd": cwd,
                "exit_code": exit_code,
                "log_tail": log_tail,
            },
        )


class DependencyFailed(CIError):
    def __init__(self, job: str, upstream: str, upstream_status: str):
        super().__init__(
            kind="DependencyFailed",
            job=job,
            step=None,
            message=f"Upstream job '{upstream}' finished as {upstream_status}",
            details={"upstream": upstream},
        )


class JobTimeout(CIError):
    def __init__(self, job: str, step: str, command: str = "", log_tail: str = "", result=None):
        self.result = result
        details = {"command": command, "log_tail": log_tail} if command else {}
        super().__init__(
            kind="Timeout",
            job=job,
            step=step,
            message="Job exceeded its wall-clock budget",
            details=details,
        )


class CancellationRequested(CIError):
    def __init__(self, job: str, step: str | None = None, result=None):
        self.result = result  # the interrupted step, if one was running
        super().__init__(
            kind="CancellationRequested",
            job=job,
            step=step,
            message="Run was cancelled",
            details={},
        )


class PublishFailure(CIError):
    def __init__(self, release: str, stage: str, message: str, **details):
        self.stage = stage
        super().__init__(
            kind="PublishFailure",
            job=release,
            step=stage,
            message=message,
            details=details,
        )


class InvalidTransition(RuntimeError):
    """A job instance was moved along an edge the status machine does not allow."""
