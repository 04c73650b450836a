from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest

from relayci.errors import InvalidWorkflow, MalformedTriggerRule
from relayci.loader import load_workflows, workflows_from_dict

BUILD_TEST_YAML = dedent(
    """
    name: build_test
    on:
      pull_request:
      workflow_dispatch:
      workflow_call:
      schedule:
        - cron: "0 5 * * 4"
    jobs:
      build-test-native:
        name: build and test native
        runs-on: ubuntu-latest
        strategy:
          matrix:
            rust: [stable]
        steps:
          - name: Check
            command: cargo
            args: ["+${{ matrix.rust }}", check]
          - name: Clippy
            run: cargo clippy --all-targets --all-features -- -Dwarnings
      build-wasm:
        needs: build-test-native
        continue-on-error: true
        steps:
          - name: Build wasm
            command: cargo
            args: [build, --target, wasm32-unknown-unknown]
    """
)


def test_yaml_workflow(tmp_path: Path) -> None:
    path = tmp_path / "build_test.relayci.yml"
    path.write_text(BUILD_TEST_YAML)
    [w] = load_workflows(path)

    assert w.name == "build_test"
    # a bare `on:` key must not be read as a boolean
    assert w.on.pull_request and w.on.workflow_dispatch and w.on.workflow_call
    assert w.on.schedules == ("0 5 * * 4",)

    native, wasm = w.jobs
    assert native.name == "build-test-native"
    assert native.title == "build and test native"
    assert native.matrix == {"rust": ["stable"]}
    assert native.steps[0].command == "cargo"
    assert native.steps[0].args == ("+${{ matrix.rust }}", "check")
    assert native.steps[1].command == "sh"
    assert native.steps[1].args[0] == "-c"
    assert wasm.needs == ["build-test-native"]
    assert wasm.required is False


def test_yaml_document_with_several_workflows(tmp_path: Path) -> None:
    path = tmp_path / "ci.yaml"
    path.write_text(dedent(
        """
        workflows:
          - name: build_test
            on: workflow_call
            jobs:
              test:
                steps:
                  - {name: test, run: cargo test}
          - name: ci_cd
            on:
              push:
                branches: [main]
            uses: build_test
            release:
              needs: build_test
              artifact: sframe
              steps:
                - {name: publish, command: cargo, args: [publish, --locked]}
        """
    ))
    build_test, ci_cd = load_workflows(path)
    assert build_test.on.workflow_call
    assert ci_cd.uses == ["build_test"]
    assert ci_cd.release.needs == ["build_test"]
    assert ci_cd.release.publish[0].command_line == "cargo publish --locked"


@pytest.mark.parametrize(
    "doc",
    [
        {"name": "w", "on": "push", "jobs": {"t": {"steps": []}}},
        {"name": "w", "on": "workflow_dispatch", "jobs": {"t": {"steps": [{"name": "x"}]}}},
        {"name": "w", "on": "workflow_dispatch", "jobs": {"t": {"steps": [{"name": "x", "run": "a", "command": "b"}]}}},
        {"name": "w", "on": "workflow_dispatch", "jobz": {}},
        {"on": "workflow_dispatch"},
    ],
)
def test_invalid_documents(doc) -> None:
    with pytest.raises(InvalidWorkflow) as exc:
        workflows_from_dict(doc)
    assert exc.value.details["errors"]


def test_missing_on_block() -> None:
    with pytest.raises(InvalidWorkflow):
        workflows_from_dict({"name": "w", "jobs": {}})


def test_bad_trigger_in_yaml() -> None:
    with pytest.raises(MalformedTriggerRule):
        workflows_from_dict({"name": "w", "on": {"schedule": [{"cron": "weekly"}]}})


def test_malformed_yaml(tmp_path: Path) -> None:
    path = tmp_path / "bad.yml"
    path.write_text("name: [unclosed\n")
    with pytest.raises(InvalidWorkflow):
        load_workflows(path)


def test_python_workflow_file(tmp_path: Path) -> None:
    path = tmp_path / "relayci_workflow.py"
    path.write_text(dedent(
        """
        from relayci import job, on_push, step, wf

        def workflows():
            return [wf("ci", job("test", step("test", "cargo", "test")), on=on_push("main"))]
        """
    ))
    [w] = load_workflows(path)
    assert w.name == "ci"
    assert w.jobs[0].steps[0].command_line == "cargo test"


def test_python_workflow_constant(tmp_path: Path) -> None:
    path = tmp_path / "other_workflow.py"
    path.write_text(dedent(
        """
        from relayci import job, on_dispatch, step, wf

        WORKFLOWS = wf("manual", job("t", step("t", "true")), on=on_dispatch())
        """
    ))
    assert [w.name for w in load_workflows(path)] == ["manual"]


def test_python_file_without_workflows(tmp_path: Path) -> None:
    path = tmp_path / "empty_workflow.py"
    path.write_text("X = 1\n")
    with pytest.raises(InvalidWorkflow):
        load_workflows(path)


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_workflows(tmp_path / "nope.py")


def test_repository_workflow_file_loads() -> None:
    root = Path(__file__).resolve().parent.parent
    workflows = load_workflows(root / "relayci_workflow.py")
    assert [w.name for w in workflows] == ["build_test", "ci_cd"]
    assert [j.title for j in workflows[0].jobs] == ["build and test native", "build wasm32"]
