# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from .errors import CIError


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    WORKFLOW_DISPATCH = "workflow_dispatch"
    SCHEDULE = "schedule"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


@dataclass(frozen=True)
class Event:
    """What happened to the repository: the input of a pipeline run."""
    kind: EventKind
    branch: str = ""
    cron_expr: Optional[str] = None
    # Files touched by the push / PR. None means "unknown": path filters pass.
    changed_files: Optional[Tuple[str, ...]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", EventKind(self.kind))
        if self.kind is EventKind.SCHEDULE and not self.cron_expr:
            raise ValueError("schedule events must carry the cron expression that fired")
        if self.changed_files is not None:
            object.__setattr__(self, "changed_files", tuple(self.changed_files))


@dataclass(frozen=True)
class TriggerRule:
    """
    When a workflow starts. Mirrors a CI `on:` block.

    push_branches=None means push does not trigger the workflow;
    an empty pull_request_branches means "any target branch".
    """
    push_branches: Optional[Tuple[str, ...]] = None
    pull_request: bool = False
    pull_request_branches: Tuple[str, ...] = ()
    schedules: Tuple[str, ...] = ()
    workflow_dispatch: bool = False
    workflow_call: bool = False
    paths: Tuple[str, ...] = ()

    def __or__(self, other: "TriggerRule") -> "TriggerRule":
        if not isinstance(other, TriggerRule):
            return NotImplemented
        push: Optional[Tuple[str, ...]] = None
        if self.push_branches is not None or other.push_branches is not None:
            push = _merge(self.push_branches or (), other.push_branches or ())
        return TriggerRule(
            push_branches=push,
            pull_request=self.pull_request or other.pull_request,
            pull_request_branches=_merge(self.pull_request_branches, other.pull_request_branches),
            schedules=_merge(self.schedules, other.schedules),
            workflow_dispatch=self.workflow_dispatch or other.workflow_dispatch,
            workflow_call=self.workflow_call or other.workflow_call,
            paths=_merge(self.paths, other.paths),
        )


def _merge(a: Tuple[str, ...], b: Tuple[str, ...]) -> Tuple[str, ...]:
    out = list(a)
    out.extend(x for x in b if x not in out)
    return tuple(out)


@dataclass(frozen=True)
class StepSpec:
    """A single command (step) inside a CI job."""
    name: str
    command: str
    args: Tuple[str, ...] = ()
    continue_on_error: bool = False
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))

    @property
    def command_line(self) -> str:
        return " ".join([self.command, *self.args])


@dataclass
class JobSpec:
    """
    A CI job: steps + dependencies + matrix axes.

    `matrix` maps axis name -> ordered values, e.g. {"rust": ["stable", "nightly"]}.
    """
    name: str
    steps: List[StepSpec]
    runs_on: str = "ubuntu-latest"
    matrix: Dict[str, List[str]] = field(default_factory=dict)
    needs: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    requires: List[str] = field(default_factory=list)   # tools that must be on PATH
    required: bool = True                                # counts toward the aggregate status
    title: Optional[str] = None                          # human label ("build and test native")


@dataclass
class ReleaseSpec:
    """
    The gated release job: runs after everything in `needs` succeeded.

    `needs` holds workflow names (every instance of that workflow), "workflow/job"
    pairs, or bare names of jobs in the release's own workflow.
    Publish steps may use {version}, {tag} and {artifact} placeholders.
    """
    needs: List[str]
    artifact: str = ""
    publish: List[StepSpec] = field(default_factory=list)
    name: str = "release"
    tag_prefix: str = "v"


@dataclass
class Workflow:
    """A group of jobs sharing one trigger rule (one CI workflow file)."""
    name: str
    on: TriggerRule
    jobs: List[JobSpec] = field(default_factory=list)
    uses: List[str] = field(default_factory=list)   # reusable workflows pulled into this run
    release: Optional[ReleaseSpec] = None


@dataclass(frozen=True)
class JobInstance:
    """One schedulable expansion of a JobSpec for one matrix binding."""
    id: int
    spec: JobSpec
    workflow: str
    binding: Tuple[Tuple[str, str], ...]
    steps: Tuple[StepSpec, ...]
    deps: FrozenSet[int] = frozenset()

    @property
    def name(self) -> str:
        if not self.binding:
            return self.spec.name
        return f"{self.spec.name} ({', '.join(v for _, v in self.binding)})"

    @property
    def matrix(self) -> Dict[str, str]:
        return dict(self.binding)


@dataclass
class StepResult:
    name: str
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    continued: bool = False   # failed, but the step allowed the job to go on

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return ((self.stdout or "") + "\n" + (self.stderr or "")).strip()


@dataclass
class JobResult:
    """The message a worker sends back to the scheduler for one instance."""
    instance_id: int
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    failure: Optional[CIError] = None
    duration: float = 0.0
