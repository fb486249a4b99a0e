"""Job graph validation: dependency edges, cycles, timeouts, topological order."""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field

from wfsched.models.graph import JobTemplate, WorkflowDefinition

# seconds (30 days)
MAX_JOB_TIMEOUT = 30 * 24 * 3600


class GraphError(ValueError):
    """Structural problem in a workflow definition. The run never starts."""


class CycleDetected(GraphError):
    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__("Dependency cycle detected: " + " -> ".join(cycle))


class UnknownDependency(GraphError):
    def __init__(self, job_id: str, dependency: str):
        self.job_id = job_id
        self.dependency = dependency
        super().__init__(f"Job '{job_id}' needs unknown job '{dependency}'")


class InvalidTimeout(GraphError):
    def __init__(self, job_id: str, timeout: float):
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(
            f"Job '{job_id}' has timeout {timeout}"
            f" (must be > 0 and at most {MAX_JOB_TIMEOUT:g}s)"
        )


class DuplicateJob(GraphError):
    def __init__(self, job_ids: list[str]):
        self.job_ids = job_ids
        super().__init__(f"Duplicate job ids: {job_ids}")


class InvalidMaxParallel(GraphError):
    def __init__(self, job_id: str, max_parallel: int):
        self.job_id = job_id
        self.max_parallel = max_parallel
        super().__init__(f"Job '{job_id}' has max_parallel {max_parallel} (must be >= 1)")


@dataclass
class ValidatedGraph:
    """A definition that passed validation, with precomputed edges."""

    definition: WorkflowDefinition
    order: list[str] = field(default_factory=list)  # topological
    templates: dict[str, JobTemplate] = field(default_factory=dict)
    dependents: dict[str, list[str]] = field(default_factory=dict)

    def template(self, job_id: str) -> JobTemplate:
        return self.templates[job_id]

    def needs(self, job_id: str) -> list[str]:
        return list(dict.fromkeys(self.templates[job_id].needs))


def validate(definition: WorkflowDefinition) -> ValidatedGraph:
    """Validate a definition and return it with its topological order.

    Raises DuplicateJob, UnknownDependency, InvalidTimeout,
    InvalidMaxParallel or CycleDetected.
    """
    ids = [job.id for job in definition.jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise DuplicateJob(dupes)

    templates = {job.id: job for job in definition.jobs}
    for job in definition.jobs:
        for dep in job.needs:
            if dep not in templates:
                raise UnknownDependency(job.id, dep)
        if not math.isfinite(job.timeout) or not 0 < job.timeout <= MAX_JOB_TIMEOUT:
            raise InvalidTimeout(job.id, job.timeout)
        if job.max_parallel is not None and job.max_parallel < 1:
            raise InvalidMaxParallel(job.id, job.max_parallel)

    # Edge dep -> job (dep runs first); declaration order kept for ties
    dependents: dict[str, list[str]] = {i: [] for i in ids}
    indeg: dict[str, int] = {i: 0 for i in ids}
    for job in definition.jobs:
        for dep in dict.fromkeys(job.needs):
            dependents[dep].append(job.id)
            indeg[job.id] += 1

    order = topological_order(ids, dependents, indeg)
    if len(order) != len(ids):
        stuck = [i for i in ids if i not in set(order)]
        raise CycleDetected(find_cycle(stuck, templates))

    return ValidatedGraph(
        definition=definition,
        order=order,
        templates=templates,
        dependents=dependents,
    )


def topological_order(
    ids: list[str],
    dependents: dict[str, list[str]],
    indeg: dict[str, int],
) -> list[str]:
    """Kahn's algorithm. Returns fewer ids than given when a cycle exists."""
    indeg = dict(indeg)
    rank = {job_id: n for n, job_id in enumerate(ids)}
    queue = deque(i for i in ids if indeg[i] == 0)
    order: list[str] = []

    while queue:
        node = queue.popleft()
        order.append(node)
        for child in sorted(dependents[node], key=rank.__getitem__):
            indeg[child] -= 1
            if indeg[child] == 0:
                queue.append(child)
    return order


def find_cycle(candidates: list[str], templates: dict[str, JobTemplate]) -> list[str]:
    """Walk needs edges among candidates until a node repeats."""
    allowed = set(candidates)
    path: list[str] = []
    seen: dict[str, int] = {}
    node = candidates[0]
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = next(d for d in templates[node].needs if d in allowed)
    return path[seen[node]:] + [node]
