# run.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .dag import JobGraph
from .errors import CIError
from .model import Event, JobResult, JobStatus, Workflow


@dataclass
class ReleaseOutcome:
    name: str
    state: str
    version: Optional[str] = None
    error: Optional[CIError] = None
    reason: Optional[str] = None


@dataclass
class PipelineRun:
    """
    All job instances started by one event.

    Created when triggers match; `statuses`, `results` and `skip_reasons`
    are written only by the Scheduler.
    """
    event: Event
    workflows: List[Workflow]
    graph: JobGraph
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    statuses: Dict[int, JobStatus] = field(default_factory=dict)
    results: Dict[int, JobResult] = field(default_factory=dict)
    skip_reasons: Dict[int, CIError] = field(default_factory=dict)
    releases: List[ReleaseOutcome] = field(default_factory=list)

    def __post_init__(self) -> None:
        for inst in self.graph.instances:
            self.statuses.setdefault(inst.id, JobStatus.PENDING)

    @property
    def workflow_names(self) -> List[str]:
        return [w.name for w in self.workflows]

    def status_of(self, instance_id: int) -> JobStatus:
        return self.statuses[instance_id]

    def is_terminal(self) -> bool:
        return all(s.terminal for s in self.statuses.values())

    def aggregate_status(self) -> JobStatus:
        """Succeeded iff every required instance succeeded and no release failed."""
        if not self.is_terminal():
            return JobStatus.RUNNING
        for inst in self.graph.instances:
            if inst.spec.required and self.statuses[inst.id] is not JobStatus.SUCCEEDED:
                return JobStatus.FAILED
        if any(r.state == "publish_failed" for r in self.releases):
            return JobStatus.FAILED
        return JobStatus.SUCCEEDED

    def first_failure(self, instance_id: int) -> Optional[CIError]:
        result = self.results.get(instance_id)
        if result is not None and result.failure is not None:
            return result.failure
        return self.skip_reasons.get(instance_id)


def report_to_dict(run: PipelineRun) -> Dict[str, Any]:
    """JSON-serializable final report of a run."""
    jobs = []
    for inst in run.graph.instances:
        status = run.statuses[inst.id]
        entry: Dict[str, Any] = {
            "id": inst.id,
            "name": inst.name,
            "job": inst.spec.name,
            "workflow": inst.workflow,
            "title": inst.spec.title,
            "matrix": inst.matrix,
            "needs": sorted(run.graph[d].name for d in inst.deps),
            "required": inst.spec.required,
            "status": status.value,
        }
        result = run.results.get(inst.id)
        if result is not None:
            entry["duration"] = round(result.duration, 3)
            entry["steps"] = [
                {
                    "name": s.name,
                    "command": s.command,
                    "exit_code": s.exit_code,
                    "continued": s.continued,
                    "output": s.output,
                }
                for s in result.steps
            ]
        failure = run.first_failure(inst.id)
        if failure is not None:
            entry["failure"] = failure.to_dict()
        jobs.append(entry)

    return {
        "run_id": run.run_id,
        "event": {
            "kind": run.event.kind.value,
            "branch": run.event.branch,
            "cron": run.event.cron_expr,
        },
        "workflows": run.workflow_names,
        "status": run.aggregate_status().value,
        "jobs": jobs,
        "releases": [
            {
                "name": r.name,
                "state": r.state,
                "version": r.version,
                "reason": r.reason,
                "error": r.error.to_dict() if r.error else None,
            }
            for r in run.releases
        ],
    }
