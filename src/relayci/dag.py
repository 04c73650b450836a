# dag.py
from __future__ import annotations

import itertools
import re
from collections import deque
from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import CycleDetected, InvalidGraph
from .model import JobInstance, JobSpec, StepSpec

Binding = Tuple[Tuple[str, str], ...]

_MATRIX_REF = re.compile(r"\$\{\{\s*matrix\.([A-Za-z_][A-Za-z0-9_-]*)\s*\}\}")


# ----------------------------------------------------------------------
# Matrix expansion
# ----------------------------------------------------------------------

def expand_matrix(axes: Mapping[str, Sequence[str]], *, job: str = "<job>") -> List[Binding]:
    """
    Enumerate the cartesian product of the matrix axes.

    Order is stable: axes in declaration order, values in declaration order,
    last axis varying fastest. No axes -> a single empty binding.
    """
    if not axes:
        return [()]

    names = list(axes)
    values: List[List[str]] = []
    for axis in names:
        vals = [str(v) for v in axes[axis]]
        if not vals:
            raise InvalidGraph(f"Matrix axis '{axis}' has no values", job=job)
        values.append(vals)

    return [tuple(zip(names, combo)) for combo in itertools.product(*values)]


def _substitute(text: str, binding: Dict[str, str], job: str) -> str:
    def repl(m: re.Match) -> str:
        axis = m.group(1)
        if axis not in binding:
            raise InvalidGraph(f"Step references unknown matrix axis '{axis}'", job=job)
        return binding[axis]

    return _MATRIX_REF.sub(repl, text)


def resolve_steps(spec: JobSpec, binding: Binding) -> Tuple[StepSpec, ...]:
    """Fill ${{ matrix.<axis> }} placeholders in every step for one binding."""
    values = dict(binding)
    out: List[StepSpec] = []
    for s in spec.steps:
        out.append(
            replace(
                s,
                name=_substitute(s.name, values, spec.name),
                command=_substitute(s.command, values, spec.name),
                args=tuple(_substitute(a, values, spec.name) for a in s.args),
                env={k: _substitute(v, values, spec.name) for k, v in s.env.items()},
            )
        )
    return tuple(out)


# ----------------------------------------------------------------------
# Graph
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class JobGraph:
    """
    Arena of job instances indexed by id; edges are id sets.

    deps live on each instance; `_dependents` is the reverse index
    (dep -> instances waiting on it).
    """
    instances: Tuple[JobInstance, ...]
    _dependents: Tuple[FrozenSet[int], ...]

    def __len__(self) -> int:
        return len(self.instances)

    def __getitem__(self, instance_id: int) -> JobInstance:
        return self.instances[instance_id]

    def dependents(self, instance_id: int) -> FrozenSet[int]:
        return self._dependents[instance_id]

    def roots(self) -> List[int]:
        return [i.id for i in self.instances if not i.deps]

    def instances_of(self, spec_name: str) -> List[JobInstance]:
        return [i for i in self.instances if i.spec.name == spec_name]

    def instances_in(self, workflow: str) -> List[JobInstance]:
        return [i for i in self.instances if i.workflow == workflow]

    def transitive_dependents(self, instance_id: int) -> Set[int]:
        seen: Set[int] = set()
        q = deque(self._dependents[instance_id])
        while q:
            node = q.popleft()
            if node in seen:
                continue
            seen.add(node)
            q.extend(self._dependents[node])
        return seen

    def levels(self) -> List[List[int]]:
        """
        Convert the DAG into topological "levels" (stages).
        Each stage can run in parallel.
        """
        indeg = {i.id: len(i.deps) for i in self.instances}
        q = deque(sorted(n for n, d in indeg.items() if d == 0))

        levels: List[List[int]] = []
        while q:
            level: List[int] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in sorted(self._dependents[node]):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)
        return levels

    def topological_order(self) -> List[int]:
        return [n for level in self.levels() for n in level]


# ----------------------------------------------------------------------
# Building
# ----------------------------------------------------------------------

def _check_names(specs: Sequence[JobSpec], workflow: str = "") -> Dict[str, JobSpec]:
    by_name: Dict[str, JobSpec] = {}
    for s in specs:
        if s.name in by_name:
            raise InvalidGraph(f"Duplicate job name: {s.name}", job=s.name, workflow=workflow)
        if not s.steps:
            raise InvalidGraph(f"Job '{s.name}' has no steps", job=s.name)
        by_name[s.name] = s

    for s in specs:
        for d in s.needs:
            if d not in by_name:
                raise InvalidGraph(
                    f"Job '{s.name}' needs missing job '{d}'",
                    job=s.name,
                    workflow=workflow,
                    known_jobs=sorted(by_name),
                )
    return by_name


def find_cycle(specs: Sequence[JobSpec]) -> Optional[List[str]]:
    """
    Depth-first search over `needs` with a "visiting" marker set.
    Returns the first cycle found as [a, b, ..., a], or None.
    """
    needs = {s.name: list(s.needs) for s in specs}
    visiting: Set[str] = set()
    done: Set[str] = set()
    path: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        if node in done:
            return None
        if node in visiting:
            return path[path.index(node):] + [node]
        visiting.add(node)
        path.append(node)
        for dep in needs.get(node, []):
            cycle = visit(dep)
            if cycle:
                return cycle
        path.pop()
        visiting.discard(node)
        done.add(node)
        return None

    for name in needs:
        cycle = visit(name)
        if cycle:
            return cycle
    return None


def build_graph(specs: Iterable[JobSpec], *, workflow: str = "") -> JobGraph:
    """Graph of a single workflow's jobs."""
    return build_run_graph([(workflow, list(specs))])


def build_run_graph(groups: Iterable[Tuple[str, Sequence[JobSpec]]]) -> JobGraph:
    """
    Expand the jobs of several workflows into one immutable DAG of job instances.

    `groups` holds (workflow name, job specs) per workflow. Job names and
    `needs` are scoped to their workflow, so two workflows may both define
    a "build" job. Requires, per workflow:
      - spec.name unique
      - spec.needs naming existing specs, without cycles
    An instance depends on every instance of every spec it needs.
    """
    groups = [(name, list(specs)) for name, specs in groups]
    seen: Set[str] = set()
    for wf_name, specs in groups:
        if wf_name in seen:
            raise InvalidGraph(f"Workflow '{wf_name}' appears twice in one run", job=wf_name)
        seen.add(wf_name)
        _check_names(specs, wf_name)
        cycle = find_cycle(specs)
        if cycle:
            raise CycleDetected(cycle)

    # Pass 1: allocate ids (workflow order, spec order, then matrix order)
    planned: List[Tuple[str, JobSpec, Binding]] = []
    ids_by_spec: Dict[Tuple[str, str], List[int]] = {}
    for wf_name, specs in groups:
        for s in specs:
            for binding in expand_matrix(s.matrix, job=s.name):
                ids_by_spec.setdefault((wf_name, s.name), []).append(len(planned))
                planned.append((wf_name, s, binding))

    # Pass 2: resolve needs -> ids, build reverse edges
    instances: List[JobInstance] = []
    dependents: List[Set[int]] = [set() for _ in planned]
    for iid, (wf_name, s, binding) in enumerate(planned):
        deps = frozenset(d for need in s.needs for d in ids_by_spec[(wf_name, need)])
        for d in deps:
            dependents[d].add(iid)
        instances.append(
            JobInstance(
                id=iid,
                spec=s,
                workflow=wf_name,
                binding=binding,
                steps=resolve_steps(s, binding),
                deps=deps,
            )
        )

    return JobGraph(
        instances=tuple(instances),
        _dependents=tuple(frozenset(d) for d in dependents),
    )
