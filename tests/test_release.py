from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeRunner

from relayci.dag import build_graph, build_run_graph
from relayci.dsl import job, release, sh, step
from relayci.errors import PublishFailure
from relayci.model import Event, JobStatus
from relayci.release import (
    CommandPublisher,
    ReleaseCoordinator,
    ReleaseState,
    RepoHistory,
    next_version,
    parse_version,
)
from relayci.run import PipelineRun


class StaticVersionSource:
    def __init__(self, history: RepoHistory):
        self.history = history
        self.reads = 0

    def read_history(self) -> RepoHistory:
        self.reads += 1
        return self.history

    def compute_version(self, history: RepoHistory) -> str:
        return next_version(history)


class BrokenVersionSource(StaticVersionSource):
    def read_history(self) -> RepoHistory:
        raise ValueError("tag v-banana is not a version")


class RecordingPublisher:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.published = []

    def publish(self, version: str, artifact: str) -> bool:
        self.published.append((version, artifact))
        return self.ok


def _finished_run(status: JobStatus) -> PipelineRun:
    graph = build_graph(
        [job("build-test-native", step("t", "cargo", "test")), job("build-wasm", step("b", "cargo", "build"))],
        workflow="build_test",
    )
    run = PipelineRun(event=Event("push", branch="main"), workflows=[], graph=graph)
    run.statuses[0] = JobStatus.SUCCEEDED
    run.statuses[1] = status
    return run


SPEC = release(needs=["build_test"], artifact="sframe")


@pytest.mark.parametrize(
    "last_tag, commits, expected",
    [
        (None, (), "0.1.0"),
        ("v1.2.3", (), "1.2.3"),
        ("v1.2.3", ("fix: off by one",), "1.2.4"),
        ("v1.2.3", ("feat: new cipher suite", "fix: typo"), "1.3.0"),
        ("v1.2.3", ("feat(api)!: drop old constructor",), "2.0.0"),
        ("v1.2.3", ("refactor: x\n\nBREAKING CHANGE: removes y",), "2.0.0"),
        ("v0.4.1", ("feat: add wasm target",), "0.4.2"),
        ("v0.4.1", ("feat!: new API",), "0.5.0"),
    ],
)
def test_next_version(last_tag, commits, expected) -> None:
    assert next_version(RepoHistory(last_tag=last_tag, commits=commits)) == expected


def test_parse_version_rejects_non_semver() -> None:
    assert parse_version("v2.10.0") == (2, 10, 0)
    with pytest.raises(ValueError):
        parse_version("nightly")


def test_release_publishes_after_upstream_succeeded() -> None:
    source = StaticVersionSource(RepoHistory("v0.3.0", ("fix: nonce reuse",)))
    publisher = RecordingPublisher()
    coordinator = ReleaseCoordinator(SPEC, source, publisher)

    assert coordinator.evaluate(_finished_run(JobStatus.SUCCEEDED)) is ReleaseState.PUBLISHED
    assert publisher.published == [("0.3.1", "sframe")]
    assert coordinator.outcome().version == "0.3.1"


@pytest.mark.parametrize("status", [JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED])
def test_release_never_publishes_when_upstream_did_not_succeed(status) -> None:
    source = StaticVersionSource(RepoHistory("v0.3.0"))
    publisher = RecordingPublisher()
    coordinator = ReleaseCoordinator(SPEC, source, publisher)

    assert coordinator.evaluate(_finished_run(status)) is ReleaseState.WAITING
    assert source.reads == 0
    assert publisher.published == []
    assert "build-wasm" in coordinator.outcome().reason


def test_release_waits_while_upstream_running() -> None:
    run = _finished_run(JobStatus.RUNNING)
    coordinator = ReleaseCoordinator(SPEC, StaticVersionSource(RepoHistory(None)), RecordingPublisher())
    assert coordinator.evaluate(run) is ReleaseState.WAITING
    run.statuses[1] = JobStatus.SUCCEEDED
    assert coordinator.evaluate(run) is ReleaseState.PUBLISHED


def test_version_failure_aborts_publish() -> None:
    publisher = RecordingPublisher()
    coordinator = ReleaseCoordinator(SPEC, BrokenVersionSource(RepoHistory(None)), publisher)

    assert coordinator.evaluate(_finished_run(JobStatus.SUCCEEDED)) is ReleaseState.PUBLISH_FAILED
    assert publisher.published == []
    error = coordinator.outcome().error
    assert isinstance(error, PublishFailure)
    assert error.stage == "version"


def test_release_is_attempted_at_most_once() -> None:
    publisher = RecordingPublisher(ok=False)
    coordinator = ReleaseCoordinator(SPEC, StaticVersionSource(RepoHistory("v1.0.0", ("fix: x",))), publisher)
    run = _finished_run(JobStatus.SUCCEEDED)

    assert coordinator.evaluate(run) is ReleaseState.PUBLISH_FAILED
    assert coordinator.evaluate(run) is ReleaseState.PUBLISH_FAILED
    assert len(publisher.published) == 1


def test_command_publisher_fills_placeholders(tmp_path: Path) -> None:
    runner = FakeRunner()
    spec = release(
        step("Tag {tag}", "git", "tag", "{tag}"),
        sh("Publish", "cargo publish -p {artifact}"),
        needs=["build_test"],
        artifact="sframe",
    )
    assert CommandPublisher(spec, runner, repo_root=tmp_path).publish("1.4.0", "sframe")
    assert runner.calls == ["git tag v1.4.0", "sh -c cargo publish -p sframe"]
    assert runner.envs[0]["RELAYCI_RELEASE_VERSION"] == "1.4.0"


def test_command_publisher_failure(tmp_path: Path) -> None:
    runner = FakeRunner(exit_codes={"cargo publish --locked": 101})
    spec = release(
        step("Publish", "cargo", "publish", "--locked"),
        step("Push tag", "git", "push", "origin", "{tag}"),
        needs=["build_test"],
    )
    with pytest.raises(PublishFailure) as exc:
        CommandPublisher(spec, runner, repo_root=tmp_path).publish("1.4.0", "")
    assert exc.value.details["cause"] == "StepFailed"
    assert runner.calls == ["cargo publish --locked"]


def test_bare_job_names_stay_in_the_release_workflow() -> None:
    graph = build_run_graph([
        ("docs", [job("build", step("b", "mdbook", "build"))]),
        ("ci_cd", [job("build", step("b", "cargo", "build"))]),
    ])
    run = PipelineRun(event=Event("push", branch="main"), workflows=[], graph=graph)
    run.statuses[0] = JobStatus.FAILED
    run.statuses[1] = JobStatus.SUCCEEDED

    publisher = RecordingPublisher()
    scoped = ReleaseCoordinator(
        release(needs=["build"], artifact="sframe"),
        StaticVersionSource(RepoHistory(None)),
        publisher,
        workflow="ci_cd",
    )
    assert scoped.upstream_ids(run) == [1]
    assert scoped.evaluate(run) is ReleaseState.PUBLISHED

    qualified = ReleaseCoordinator(
        release(needs=["docs/build"], artifact="sframe"),
        StaticVersionSource(RepoHistory(None)),
        RecordingPublisher(),
        workflow="ci_cd",
    )
    assert qualified.upstream_ids(run) == [0]
