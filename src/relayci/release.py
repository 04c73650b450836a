# release.py
from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Protocol, Tuple

from .errors import CIError, PublishFailure
from .executor import CommandRunner, job_env_for_release, run_step
from .git_facts import git
from .model import JobStatus, ReleaseSpec
from .run import PipelineRun, ReleaseOutcome
from .ui.console import Console, get_console


class ReleaseState(str, Enum):
    WAITING = "waiting"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    PUBLISH_FAILED = "publish_failed"


# ----------------------------------------------------------------------
# Version computation
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RepoHistory:
    """What the version computation looks at: last release tag + commits since."""
    last_tag: Optional[str]
    commits: Tuple[str, ...] = ()   # full messages, newest first


_SEMVER = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
_BREAKING_HEADER = re.compile(r"^[A-Za-z]+(\([^)]*\))?!:")
_FEAT_HEADER = re.compile(r"^feat(\([^)]*\))?:")


def parse_version(tag: str, prefix: str = "v") -> Tuple[int, int, int]:
    raw = tag[len(prefix):] if prefix and tag.startswith(prefix) else tag
    m = _SEMVER.match(raw)
    if not m:
        raise ValueError(f"Tag {tag!r} is not a {prefix}MAJOR.MINOR.PATCH version")
    return int(m.group(1)), int(m.group(2)), int(m.group(3))


def next_version(history: RepoHistory, prefix: str = "v") -> str:
    """
    Conventional-commit bump from the last tag.

      - no tag yet                      -> 0.1.0
      - no commits since the tag        -> the tag's version (nothing new)
      - "type!:" or "BREAKING CHANGE"   -> major (minor while 0.x)
      - "feat:"                         -> minor (patch while 0.x)
      - anything else                   -> patch
    """
    if history.last_tag is None:
        return "0.1.0"

    major, minor, patch = parse_version(history.last_tag, prefix)
    if not history.commits:
        return f"{major}.{minor}.{patch}"

    breaking = any(
        _BREAKING_HEADER.match(c) or "BREAKING CHANGE" in c for c in history.commits
    )
    feature = any(_FEAT_HEADER.match(c) for c in history.commits)

    if breaking:
        if major == 0:
            return f"0.{minor + 1}.0"
        return f"{major + 1}.0.0"
    if feature and major > 0:
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"


class VersionSource(Protocol):
    def read_history(self) -> RepoHistory: ...

    def compute_version(self, history: RepoHistory) -> str: ...


class GitVersionSource:
    """Reads tags and commit messages from the local git repository."""

    def __init__(self, repo_root: str | Path = ".", tag_prefix: str = "v"):
        self.repo_root = Path(repo_root)
        self.tag_prefix = tag_prefix

    def read_history(self) -> RepoHistory:
        tag = git.latest_tag(self.tag_prefix, cwd=self.repo_root)
        return RepoHistory(
            last_tag=tag,
            commits=tuple(git.commit_subjects(tag, cwd=self.repo_root)),
        )

    def compute_version(self, history: RepoHistory) -> str:
        return next_version(history, self.tag_prefix)


# ----------------------------------------------------------------------
# Publishing
# ----------------------------------------------------------------------

class Publisher(Protocol):
    def publish(self, version: str, artifact: str) -> bool: ...


class CommandPublisher:
    """
    Publishes by running the release's steps in order, fail-fast.
    Step names, commands and args may use {version}, {tag} and {artifact}.
    """

    def __init__(
        self,
        spec: ReleaseSpec,
        runner: CommandRunner,
        *,
        repo_root: str | Path = ".",
        console: Optional[Console] = None,
    ):
        self.spec = spec
        self.runner = runner
        self.repo_root = Path(repo_root).resolve()
        self.console = console or get_console()

    def publish(self, version: str, artifact: str) -> bool:
        values = {"version": version, "tag": f"{self.spec.tag_prefix}{version}", "artifact": artifact}
        env = job_env_for_release(self.spec.name, version)
        for step in self.spec.publish:
            step = replace(
                step,
                name=step.name.format(**values),
                command=step.command.format(**values),
                args=tuple(a.format(**values) for a in step.args),
            )
            self.console.print_step(self.spec.name, step.name)
            try:
                run_step(self.spec.name, step, self.runner, repo_root=self.repo_root, env=env)
            except CIError as e:
                raise PublishFailure(
                    self.spec.name,
                    "publish",
                    f"Publish step '{step.name}' failed",
                    cause=e.kind,
                    log_tail=e.details.get("log_tail", ""),
                )
        return True


# ----------------------------------------------------------------------
# Coordinator
# ----------------------------------------------------------------------

class ReleaseCoordinator:
    """
    Waiting -> Publishing -> {Published, PublishFailed}

    Enters Publishing only once every upstream instance Succeeded.
    Never retries; a second evaluate() returns the stored state.
    """

    def __init__(
        self,
        spec: ReleaseSpec,
        version_source: VersionSource,
        publisher: Publisher,
        *,
        console: Optional[Console] = None,
        workflow: str = "",
    ):
        self.spec = spec
        self.workflow = workflow
        self.version_source = version_source
        self.publisher = publisher
        self.console = console or get_console()
        self.state = ReleaseState.WAITING
        self.version: Optional[str] = None
        self.error: Optional[PublishFailure] = None
        self.reason: Optional[str] = None

    def upstream_ids(self, run: PipelineRun) -> List[int]:
        """
        Instances named by `needs`: a whole workflow, a "workflow/job" pair,
        or a bare job name of the release's own workflow (any workflow when
        the coordinator is not bound to one).
        """
        needs = set(self.spec.needs)
        return [
            i.id
            for i in run.graph.instances
            if i.workflow in needs
            or f"{i.workflow}/{i.spec.name}" in needs
            or (i.spec.name in needs and self.workflow in ("", i.workflow))
        ]

    def _fail(self, stage: str, e: Exception) -> ReleaseState:
        if isinstance(e, PublishFailure):
            self.error = e
        else:
            self.error = PublishFailure(self.spec.name, stage, str(e) or type(e).__name__, error_type=type(e).__name__)
        self.state = ReleaseState.PUBLISH_FAILED
        return self.state

    def evaluate(self, run: PipelineRun) -> ReleaseState:
        if self.state is not ReleaseState.WAITING:
            return self.state

        ids = self.upstream_ids(run)
        if not ids:
            self.reason = f"no upstream jobs for {', '.join(self.spec.needs)} in this run"
            return self.state
        if not all(run.statuses[i].terminal for i in ids):
            self.reason = "upstream jobs still running"
            return self.state

        not_ok = [run.graph[i].name for i in ids if run.statuses[i] is not JobStatus.SUCCEEDED]
        if not_ok:
            self.reason = f"upstream not successful: {', '.join(not_ok)}"
            return self.state

        self.reason = None
        self.state = ReleaseState.PUBLISHING
        self.console.print_release(self.spec.name, self.state.value)

        try:
            history = self.version_source.read_history()
            self.version = self.version_source.compute_version(history)
        except (CIError, ValueError, OSError, subprocess.CalledProcessError) as e:
            return self._fail("version", e)

        try:
            ok = self.publisher.publish(self.version, self.spec.artifact)
        except (CIError, OSError, subprocess.CalledProcessError) as e:
            return self._fail("publish", e)
        if not ok:
            return self._fail("publish", PublishFailure(self.spec.name, "publish", "Publisher reported failure"))

        self.state = ReleaseState.PUBLISHED
        return self.state

    def outcome(self) -> ReleaseOutcome:
        return ReleaseOutcome(
            name=self.spec.name,
            state=self.state.value,
            version=self.version,
            error=self.error,
            reason=self.reason,
        )
