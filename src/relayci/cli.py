# cli.py
from __future__ import annotations

import json
import signal
import subprocess
import sys
from pathlib import Path

import click

from relayci import settings
from relayci.errors import CIError
from relayci.git_facts import git
from relayci.loader import load_workflows
from relayci.model import Event, EventKind, JobStatus
from relayci.pipeline import plan_run, print_plan, run_pipeline, summarize
from relayci.release import GitVersionSource
from relayci.run import report_to_dict
from relayci.triggers import describe_rule
from relayci.ui.console import Console, get_console, set_console


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / settings.WORKFLOW_FILE
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for pattern in ("*_workflow.py", "*.relayci.yml", "*.relayci.yaml"):
        for path in current_dir.glob(pattern):
            if path != default_workflow:
                workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix not in (".py", ".yml", ".yaml"):
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  relayci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {settings.WORKFLOW_FILE}",
                "  *_workflow.py",
                "  *.relayci.yml",
            ],
            suggestion=f"Create a workflow file:\n  {settings.WORKFLOW_FILE}\n\nOr specify a workflow explicitly:\n  relayci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  relayci run --workflow {settings.WORKFLOW_FILE}",
        )
        sys.exit(1)

    return workflow_files[0]


def build_event(event, branch, cron, changed_files, git_diff, compare_ref) -> Event:
    """Turn CLI options into the Event a run is evaluated against."""
    console = get_console()
    kind = EventKind(event)

    if kind is EventKind.SCHEDULE and not cron:
        console.print_error(
            "Missing cron expression",
            "A schedule event needs the cron expression that fired.",
            suggestion='relayci run --event schedule --cron "0 5 * * 4"',
        )
        sys.exit(1)

    if not branch and kind is not EventKind.SCHEDULE:
        try:
            branch = git.current_branch()
            console.print_debug(f"Using current branch: {branch}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            branch = ""

    files = list(changed_files) if changed_files else None
    if git_diff:
        try:
            files = sorted(set(files or []) | set(git.working_changes(compare_ref)))
            console.print_debug(f"Changed files from git: {len(files)}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not compute changed files",
                f"git diff against {compare_ref} failed.",
                suggestion="Pass files explicitly with --changed-file, or drop --git-diff.",
            )
            sys.exit(1)

    return Event(kind=kind, branch=branch or "", cron_expr=cron, changed_files=files)


def _load(workflow):
    workflow_path = discover_workflow(workflow)
    console = get_console()
    workflows = load_workflows(workflow_path)
    console.print_debug(f"Loaded {len(workflows)} workflow(s) from {workflow_path}")
    return workflow_path, workflows


def _fail_with(e: Exception) -> None:
    console = get_console()
    if isinstance(e, CIError):
        details = [f"job: {e.job}"]
        if e.step:
            details.append(f"step: {e.step}")
        details.extend(f"{k}: {v}" for k, v in e.details.items())
        console.print_error(e.kind, e.message, details=details)
        if console.debug:
            console.print_exception(e)
    else:
        console.print_exception(e)
    sys.exit(1)


event_options = [
    click.option(
        "--event",
        type=click.Choice([k.value for k in EventKind]),
        default=EventKind.PUSH.value,
        show_default=True,
        help="Kind of repository event to evaluate triggers against",
    ),
    click.option("--branch", default=None, help="Branch pushed to / PR target (defaults to current branch)"),
    click.option("--cron", default=None, help="Cron expression that fired (schedule events)"),
    click.option("--changed-file", "changed_files", multiple=True, help="Changed file (repeatable); enables path filters"),
    click.option("--git-diff/--no-git-diff", default=False, help="Fill changed files from git"),
    click.option("--compare-ref", default=settings.COMPARE_REF, show_default=True, help="Git ref to diff against"),
]


def with_event_options(fn):
    for opt in reversed(event_options):
        fn = opt(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: trigger-driven build, test and release pipelines."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {settings.WORKFLOW_FILE} if present)",
)
@with_event_options
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Number of parallel workers")
@click.option("--timeout", default=settings.JOB_TIMEOUT, type=float, show_default=True, help="Per-job wall-clock budget in seconds")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Cancel the run after the first failed job")
@click.option("--release/--no-release", default=True, show_default=True, help="Evaluate gated releases after the jobs")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print the job stages before running")
@click.option("--report", type=click.Path(dir_okay=False), default=None, help="Write a JSON report to this file")
@click.pass_context
def run(ctx, workflow, event, branch, cron, changed_files, git_diff, compare_ref,
        workers, timeout, fail_fast, release, print_plan, report):
    """Run the workflows an event triggers."""
    console = get_console()

    # CI runners stop jobs with SIGTERM; treat it like Ctrl-C
    signal.signal(signal.SIGTERM, signal.default_int_handler)

    try:
        _, workflows = _load(workflow)
        ev = build_event(event, branch, cron, changed_files, git_diff, compare_ref)

        result = run_pipeline(
            workflows,
            ev,
            repo_root=".",
            max_workers=workers,
            job_timeout=timeout or None,
            fail_fast=fail_fast,
            release=release,
            print_plan_first=print_plan,
        )
        summarize(result, console)

        if report:
            Path(report).write_text(json.dumps(report_to_dict(result), indent=2), encoding="utf-8")
            console.print_info(f"Report written to {report}")

        if result.aggregate_status() is not JobStatus.SUCCEEDED:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        _fail_with(e)


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {settings.WORKFLOW_FILE} if present)",
)
@with_event_options
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the plan as JSON")
@click.pass_context
def plan(ctx, workflow, event, branch, cron, changed_files, git_diff, compare_ref, as_json):
    """Show which workflows and jobs an event would run, without running them."""
    console = get_console()
    try:
        _, workflows = _load(workflow)
        ev = build_event(event, branch, cron, changed_files, git_diff, compare_ref)
        planned = plan_run(workflows, ev)

        if as_json:
            click.echo(json.dumps({
                "event": ev.kind.value,
                "workflows": [
                    {"name": w.name, "on": describe_rule(w.on), "uses": w.uses}
                    for w in planned.workflows
                ],
                "stages": [
                    [planned.graph[i].name for i in level]
                    for level in planned.graph.levels()
                ],
            }, indent=2))
            return

        console.print_header("Workflows")
        if not planned.workflows:
            console.print_info("  (no workflow matches this event)")
        for w in planned.workflows:
            console.print_info(f"  {w.name}: {json.dumps(describe_rule(w.on))}")
        print_plan(planned, console)
    except Exception as e:
        _fail_with(e)


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help=f"Workflow file path (defaults to {settings.WORKFLOW_FILE} if present)",
)
@click.pass_context
def release(ctx, workflow):
    """Show the version each release would publish, from git tags and commits."""
    console = get_console()
    try:
        _, workflows = _load(workflow)
        found = False
        for w in workflows:
            if w.release is None:
                continue
            found = True
            source = GitVersionSource(".", w.release.tag_prefix)
            history = source.read_history()
            version = source.compute_version(history)
            console.print_info(
                f"{w.name}/{w.release.name}: last tag {history.last_tag or '(none)'}, "
                f"{len(history.commits)} commit(s) since, next {w.release.tag_prefix}{version}"
            )
        if not found:
            console.print_info("No workflow defines a release.")
    except Exception as e:
        _fail_with(e)


if __name__ == "__main__":
    cli()
