# src/relayci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .model import JobSpec, ReleaseSpec, StepSpec, TriggerRule, Workflow


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    continue_on_error: bool = False,
    env: Optional[Dict[str, str]] = None,
) -> StepSpec:
    """Create a shell step (`sh -c cmd`)."""
    return StepSpec(
        name=name,
        command="sh",
        args=("-c", cmd),
        continue_on_error=continue_on_error,
        cwd=cwd,
        env=env or {},
    )


def step(
    name: str,
    command: str,
    *args: str,
    cwd: str | None = None,
    continue_on_error: bool = False,
    env: Optional[Dict[str, str]] = None,
) -> StepSpec:
    """Create a step that runs `command args...` directly, without a shell."""
    return StepSpec(
        name=name,
        command=command,
        args=tuple(args),
        continue_on_error=continue_on_error,
        cwd=cwd,
        env=env or {},
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(**axes: Iterable[str]) -> Dict[str, List[str]]:
    """
    Matrix axes for a job.

    Example:
        job("check", ..., matrix=matrix(rust=["stable", "nightly"]))
    Steps reference a value with ${{ matrix.rust }}.
    """
    out = {k: [str(v) for v in vals] for k, vals in axes.items()}
    empty = [k for k, v in out.items() if not v]
    if empty:
        raise ValueError(f"matrix axis {empty[0]!r} has no values")
    return out


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepSpec]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    runs_on: str = "ubuntu-latest",
    matrix: Optional[Dict[str, List[str]]] = None,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    required: bool = True,
    title: Optional[str] = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobSpec:
    steps_final: List[StepSpec] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return JobSpec(
        name=name,
        steps=steps_final,
        runs_on=runs_on,
        matrix=dict(matrix or {}),
        needs=list(needs or []),
        env=dict(env or {}),
        requires=list(requires or []),
        required=required,
        title=title,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[StepSpec] = []
        self._env: dict[str, str] = {}
        self._requires: list[str] = []
        self._matrix: dict[str, list[str]] = {}
        self._runs_on = "ubuntu-latest"
        self._required = True

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_requirements(self, *tools: str):
        self._requires.extend(tools)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, continue_on_error: bool = False):
        self._steps.append(sh(name, run, cwd=cwd, continue_on_error=continue_on_error))
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, **axes: Iterable[str]):
        self._matrix.update(matrix(**axes))
        return self

    def on(self, runs_on: str):
        self._runs_on = runs_on
        return self

    def optional(self):
        self._required = False
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return JobSpec(
            name=self.name,
            steps=list(self._steps),
            runs_on=self._runs_on,
            matrix=dict(self._matrix),
            needs=list(self._needs),
            env=dict(self._env),
            requires=list(self._requires),
            required=self._required,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Triggers (combine with |)
# ---------------------------------------------------------------------

def on_push(*branches: str, paths: Iterable[str] = ()) -> TriggerRule:
    return TriggerRule(push_branches=tuple(branches), paths=tuple(paths))


def on_pull_request(*branches: str, paths: Iterable[str] = ()) -> TriggerRule:
    return TriggerRule(pull_request=True, pull_request_branches=tuple(branches), paths=tuple(paths))


def on_schedule(*crons: str) -> TriggerRule:
    return TriggerRule(schedules=tuple(crons))


def on_dispatch() -> TriggerRule:
    return TriggerRule(workflow_dispatch=True)


def on_call() -> TriggerRule:
    return TriggerRule(workflow_call=True)


# ---------------------------------------------------------------------
# Release + workflow helpers
# ---------------------------------------------------------------------

def release(
    *publish: StepSpec,
    needs: List[str],
    artifact: str = "",
    name: str = "release",
    tag_prefix: str = "v",
) -> ReleaseSpec:
    return ReleaseSpec(
        needs=list(needs),
        artifact=artifact,
        publish=list(publish),
        name=name,
        tag_prefix=tag_prefix,
    )


def wf(
    name: str,
    *jobs: JobSpec,
    on: TriggerRule,
    uses: Optional[List[str]] = None,
    release: Optional[ReleaseSpec] = None,
) -> Workflow:
    """
    Workflow definition helper.

    Users can write:
        from relayci import wf, job, sh, on_push

        def workflows():
            return [
                wf("build", job(...), job(...), on=on_push("main")),
            ]
    """
    return Workflow(
        name=name,
        on=on,
        jobs=list(jobs),
        uses=list(uses or []),
        release=release,
    )
