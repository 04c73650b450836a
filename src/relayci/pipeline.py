# pipeline.py
from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from . import settings
from .dag import build_run_graph
from .errors import InvalidWorkflow
from .executor import CommandRunner, SubprocessRunner, execute_job
from .model import Event, JobInstance, JobResult, Workflow
from .release import CommandPublisher, GitVersionSource, Publisher, ReleaseCoordinator, VersionSource
from .run import PipelineRun
from .scheduler import Scheduler
from .triggers import evaluate_triggers
from .ui.console import Console, get_console


# ----------------------------------------------------------------------
# Planning (trigger evaluation + graph construction)
# ----------------------------------------------------------------------

def select_workflows(workflows: Sequence[Workflow], event: Event) -> List[Workflow]:
    """
    Workflows started by `event`, plus every workflow they `use`.
    Each workflow appears once, in definition order.
    """
    by_name: Dict[str, Workflow] = {}
    for w in workflows:
        if w.name in by_name:
            raise InvalidWorkflow(w.name, f"Duplicate workflow name: {w.name}")
        by_name[w.name] = w

    matched = evaluate_triggers(event, {w.name: w.on for w in workflows})

    included = set()
    stack = list(matched)
    while stack:
        name = stack.pop()
        if name in included:
            continue
        if name not in by_name:
            raise InvalidWorkflow(name, f"Unknown reusable workflow: {name}", known=sorted(by_name))
        included.add(name)
        stack.extend(by_name[name].uses)

    return [w for w in workflows if w.name in included]


def plan_run(workflows: Sequence[Workflow], event: Event) -> PipelineRun:
    """
    Decide what runs for `event` and build the job graph.

    Malformed triggers, unknown workflows and bad graphs (cycles, missing
    needs) raise here, before any job is started.
    """
    selected = select_workflows(workflows, event)

    graph = build_run_graph([(w.name, w.jobs) for w in selected])
    return PipelineRun(event=event, workflows=selected, graph=graph)


def print_plan(run: PipelineRun, console: Optional[Console] = None) -> None:
    console = console or get_console()
    console.print_header(f"Plan ({len(run.graph)} jobs)")
    for idx, level in enumerate(run.graph.levels(), start=1):
        console.print_stage(idx, [run.graph[i].name for i in level])
    for w in run.workflows:
        if w.release is not None:
            console.print_info(f"  then: {w.release.name} (after {', '.join(w.release.needs)})")


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------

def run_releases(
    run: PipelineRun,
    runner: CommandRunner,
    *,
    repo_root: str | Path = ".",
    version_source: Optional[VersionSource] = None,
    publisher: Optional[Publisher] = None,
    console: Optional[Console] = None,
) -> None:
    """Evaluate the release of every workflow in the run, at most once each."""
    console = console or get_console()
    for w in run.workflows:
        spec = w.release
        if spec is None:
            continue
        coordinator = ReleaseCoordinator(
            spec,
            version_source or GitVersionSource(repo_root, spec.tag_prefix),
            publisher or CommandPublisher(spec, runner, repo_root=repo_root, console=console),
            console=console,
            workflow=w.name,
        )
        coordinator.evaluate(run)
        outcome = coordinator.outcome()
        run.releases.append(outcome)
        reason = outcome.reason
        if outcome.error is not None:
            reason = outcome.error.message
        console.print_release(outcome.name, outcome.state, outcome.version, reason)


def run_pipeline(
    workflows: Sequence[Workflow],
    event: Event,
    *,
    runner: Optional[CommandRunner] = None,
    repo_root: str | Path = ".",
    max_workers: int | None = None,
    job_timeout: Optional[float] = settings.JOB_TIMEOUT,
    fail_fast: bool = False,
    release: bool = True,
    version_source: Optional[VersionSource] = None,
    publisher: Optional[Publisher] = None,
    print_plan_first: bool = False,
    console: Optional[Console] = None,
) -> PipelineRun:
    """
    Public entry point for executing a pipeline:
      - plan which workflows/jobs the event starts
      - run the job graph on the scheduler
      - evaluate the gated releases
    """
    console = console or get_console()
    runner = runner or SubprocessRunner()
    run = plan_run(workflows, event)

    console.print_run_started(
        run_id=run.run_id,
        event=f"{event.kind.value} {event.branch or event.cron_expr or ''}".strip(),
        workflows=run.workflow_names,
        job_count=len(run.graph),
    )
    if print_plan_first:
        print_plan(run, console)

    def execute(instance: JobInstance, cancel: threading.Event) -> JobResult:
        return execute_job(
            instance,
            runner,
            repo_root=repo_root,
            cancel=cancel,
            timeout=job_timeout,
            console=console,
        )

    Scheduler(
        run.graph,
        execute,
        max_workers=max_workers,
        fail_fast=fail_fast,
        console=console,
    ).run(run)

    if release:
        run_releases(
            run,
            runner,
            repo_root=repo_root,
            version_source=version_source,
            publisher=publisher,
            console=console,
        )
    return run


def summarize(run: PipelineRun, console: Optional[Console] = None) -> None:
    """Print every instance with its terminal status."""
    console = console or get_console()
    rows = []
    qualify = len(run.workflows) > 1
    for inst in run.graph.instances:
        label = f"{inst.workflow}/{inst.name}" if qualify else inst.name
        if inst.spec.title:
            label = f"{inst.spec.title} [{label}]"
        failure = run.first_failure(inst.id)
        note = ""
        if failure is not None:
            note = failure.message if failure.step is None else f"{failure.step}: {failure.message}"
        if not inst.spec.required:
            note = f"optional; {note}" if note else "optional"
        rows.append((label, run.statuses[inst.id].value, note))
    for r in run.releases:
        rows.append((r.name, r.state, r.version or r.reason or ""))
    console.print_results(rows, run.aggregate_status().value)
