"""Workflow loading.

Two sources are supported:

- Python files defining ``workflows()`` (or ``workflow()`` / ``WORKFLOWS``),
  built with the helpers in :mod:`relayci.dsl`;
- YAML documents shaped like CI workflow files, validated with pydantic.
"""

from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import InvalidWorkflow
from .model import JobSpec, ReleaseSpec, StepSpec, Workflow
from .triggers import parse_trigger_rule


# ----------------------------------------------------------------------
# YAML schema
# ----------------------------------------------------------------------

def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


class StepModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str
    run: Optional[str] = None
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    continue_on_error: bool = Field(False, alias="continue-on-error")
    cwd: Optional[str] = Field(None, alias="working-directory")
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("args", mode="before")
    @classmethod
    def stringify_args(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [str(x) for x in v]
        return v

    @model_validator(mode="after")
    def one_of_run_or_command(self) -> "StepModel":
        if (self.run is None) == (self.command is None):
            raise ValueError(f"step {self.name!r} needs exactly one of 'run' or 'command'")
        if self.run is not None and self.args:
            raise ValueError(f"step {self.name!r}: 'args' only applies to 'command' steps")
        return self

    def to_spec(self) -> StepSpec:
        if self.run is not None:
            command, args = "sh", ("-c", self.run)
        else:
            command, args = self.command, tuple(self.args)
        return StepSpec(
            name=self.name,
            command=command,
            args=args,
            continue_on_error=self.continue_on_error,
            cwd=self.cwd,
            env=dict(self.env),
        )


class StrategyModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    matrix: Dict[str, List[str]] = Field(default_factory=dict)

    @field_validator("matrix", mode="before")
    @classmethod
    def stringify_values(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {k: [str(x) for x in _as_list(vals)] for k, vals in v.items()}
        return v


class JobModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    runs_on: str = Field("ubuntu-latest", alias="runs-on")
    needs: List[str] = Field(default_factory=list)
    strategy: Optional[StrategyModel] = None
    steps: List[StepModel] = Field(min_length=1)
    env: Dict[str, str] = Field(default_factory=dict)
    requires: List[str] = Field(default_factory=list)
    # a job that may fail without failing the pipeline
    continue_on_error: bool = Field(False, alias="continue-on-error")

    normalize_needs = field_validator("needs", "requires", mode="before")(_as_list)

    def to_spec(self, job_id: str) -> JobSpec:
        return JobSpec(
            name=job_id,
            steps=[s.to_spec() for s in self.steps],
            runs_on=self.runs_on,
            matrix=dict(self.strategy.matrix) if self.strategy else {},
            needs=list(self.needs),
            env=dict(self.env),
            requires=list(self.requires),
            required=not self.continue_on_error,
            title=self.name,
        )


class ReleaseModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = "release"
    needs: List[str]
    artifact: str = ""
    steps: List[StepModel] = Field(default_factory=list)
    tag_prefix: str = Field("v", alias="tag-prefix")

    normalize_needs = field_validator("needs", mode="before")(_as_list)

    def to_spec(self) -> ReleaseSpec:
        return ReleaseSpec(
            needs=list(self.needs),
            artifact=self.artifact,
            publish=[s.to_spec() for s in self.steps],
            name=self.name,
            tag_prefix=self.tag_prefix,
        )


class WorkflowModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    on: Any = None
    jobs: Dict[str, JobModel] = Field(default_factory=dict)
    uses: List[str] = Field(default_factory=list)
    release: Optional[ReleaseModel] = None

    normalize_uses = field_validator("uses", mode="before")(_as_list)


class DocumentModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    workflows: List[WorkflowModel]


def _fix_on_key(raw: Any) -> Any:
    # YAML 1.1 reads a bare `on:` key as boolean True
    if isinstance(raw, dict) and True in raw and "on" not in raw:
        raw = dict(raw)
        raw["on"] = raw.pop(True)
    return raw


def workflows_from_dict(data: Any, *, source: str = "<dict>") -> List[Workflow]:
    """
    Validate a parsed document and convert it to Workflow records.

    Accepts {"workflows": [...]} or a single workflow mapping.
    """
    if isinstance(data, dict) and "workflows" not in data:
        data = {"workflows": [data]}
    if isinstance(data, dict) and isinstance(data.get("workflows"), list):
        data = dict(data)
        data["workflows"] = [_fix_on_key(w) for w in data["workflows"]]

    try:
        doc = DocumentModel.model_validate(data)
    except ValidationError as e:
        raise InvalidWorkflow(
            source,
            f"Invalid workflow document ({e.error_count()} error(s))",
            errors=[
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in e.errors()
            ],
        )

    out: List[Workflow] = []
    for w in doc.workflows:
        if w.on is None:
            raise InvalidWorkflow(source, f"Workflow '{w.name}' has no 'on' triggers")
        out.append(
            Workflow(
                name=w.name,
                on=parse_trigger_rule(w.name, w.on),
                jobs=[j.to_spec(job_id) for job_id, j in w.jobs.items()],
                uses=list(w.uses),
                release=w.release.to_spec() if w.release else None,
            )
        )
    return out


def load_yaml_workflows(path: Path) -> List[Workflow]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InvalidWorkflow(str(path), f"Malformed YAML: {e}")
    return workflows_from_dict(data, source=str(path))


# ----------------------------------------------------------------------
# Python workflow files
# ----------------------------------------------------------------------

def _coerce(value: Any, source: str) -> List[Workflow]:
    if isinstance(value, Workflow):
        return [value]
    if isinstance(value, list) and value and all(isinstance(w, Workflow) for w in value):
        return value
    raise InvalidWorkflow(
        source,
        "Workflow file must return/define Workflow objects. "
        "Define workflows() -> List[Workflow] or WORKFLOWS = [wf(...), ...].",
    )


def load_python_workflows(path: Path) -> List[Workflow]:
    module_name = f"relayci_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    for fn_name in ("workflows", "workflow"):
        fn = globals_dict.get(fn_name)
        if callable(fn):
            return _coerce(fn(), str(path))
    if "WORKFLOWS" in globals_dict:
        return _coerce(globals_dict["WORKFLOWS"], str(path))

    raise InvalidWorkflow(
        str(path),
        "No workflows found. Define workflows() -> List[Workflow] or WORKFLOWS = [...].",
    )


def load_workflows(path: Union[str, Path]) -> List[Workflow]:
    """
    Load workflows from a .py, .yml or .yaml file.

    Raises:
      FileNotFoundError: the file does not exist
      InvalidWorkflow / MalformedTriggerRule: the definitions are invalid
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".py":
        return load_python_workflows(wf_path)
    if wf_path.suffix in (".yml", ".yaml"):
        return load_yaml_workflows(wf_path)
    raise InvalidWorkflow(str(wf_path), f"Unsupported workflow file type: {wf_path.suffix}")
