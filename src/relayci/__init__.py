# Import .pipeline (which loads the relayci.release submodule) before .dsl so the
# dsl ``release`` function is not shadowed by the submodule attribute.
from .model import Event, EventKind, JobSpec, JobStatus, ReleaseSpec, StepSpec, TriggerRule, Workflow
from .pipeline import plan_run, run_pipeline
from .dsl import (
    JobBuilder,
    build,
    job,
    matrix,
    on_call,
    on_dispatch,
    on_pull_request,
    on_push,
    on_schedule,
    release,
    sh,
    step,
    wf,
)

__all__ = [
    "JobBuilder",
    "build",
    "job",
    "matrix",
    "on_call",
    "on_dispatch",
    "on_pull_request",
    "on_push",
    "on_schedule",
    "release",
    "sh",
    "step",
    "wf",
    "Event",
    "EventKind",
    "JobSpec",
    "JobStatus",
    "ReleaseSpec",
    "StepSpec",
    "TriggerRule",
    "Workflow",
    "plan_run",
    "run_pipeline",
]
