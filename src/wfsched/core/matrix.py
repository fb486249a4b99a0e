"""Matrix expansion: one job template -> ordered, independently tracked instances."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, NamedTuple

from wfsched.core.graph import ValidatedGraph
from wfsched.models.enums import InstanceStatus
from wfsched.models.graph import JobTemplate, MatrixSpec, ParameterSet
from wfsched.models.run import InstanceSnapshot

logger = logging.getLogger(__name__)


class InstanceId(NamedTuple):
    job_id: str
    index: int

    def __str__(self) -> str:
        return f"{self.job_id}[{self.index}]"


@dataclass
class JobInstance:
    """One concrete execution unit: a template bound to one parameter set."""

    instance_id: InstanceId
    template: JobTemplate
    parameters: ParameterSet = field(default_factory=dict)
    status: InstanceStatus = InstanceStatus.PENDING
    attempts: int = 0
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    transitions: list[dict[str, str]] = field(default_factory=list)

    @property
    def job_id(self) -> str:
        return self.instance_id.job_id

    @property
    def index(self) -> int:
        return self.instance_id.index

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, new_status: InstanceStatus, error: str | None = None) -> bool:
        """Move to new_status. Terminal states are sticky: returns False if ignored."""
        if self.status.is_terminal:
            return False
        if new_status == self.status:
            return True
        now = datetime.now(timezone.utc)
        self.transitions.append({
            "from": self.status.value,
            "to": new_status.value,
            "timestamp": now.isoformat(),
        })
        self.status = new_status
        if new_status == InstanceStatus.RUNNING:
            self.started_at = now
        elif new_status.is_terminal:
            self.finished_at = now
            if error:
                self.error = error
        return True

    def to_snapshot(self) -> InstanceSnapshot:
        return InstanceSnapshot(
            instance_id=str(self.instance_id),
            index=self.index,
            parameters=dict(self.parameters),
            status=self.status,
            attempts=self.attempts,
            error=self.error,
            metadata=dict(self.metadata),
            started_at=self.started_at,
            finished_at=self.finished_at,
            transitions=self.transitions,
        )


def parameter_sets(matrix: MatrixSpec | None) -> list[ParameterSet]:
    """Resolve a matrix to its ordered list of parameter sets.

    Axis matrices expand as a cartesian product with the first axis varying
    slowest; exclude entries drop every combination matching all of their
    keys, include entries are appended afterwards.
    """
    if matrix is None or matrix.is_empty:
        return []
    if matrix.parameter_sets:
        return [dict(p) for p in matrix.parameter_sets]

    combos: list[ParameterSet] = []
    if matrix.axes:
        names = list(matrix.axes)
        for values in itertools.product(*(matrix.axes[n] for n in names)):
            combos.append(dict(zip(names, values)))

    if matrix.exclude:
        combos = [
            c for c in combos
            if not any(_matches(c, ex) for ex in matrix.exclude)
        ]
    combos.extend(dict(inc) for inc in matrix.include)
    return combos


def _matches(combo: ParameterSet, pattern: ParameterSet) -> bool:
    return all(k in combo and combo[k] == v for k, v in pattern.items())


def expand_template(template: JobTemplate) -> list[JobInstance]:
    """One instance per parameter set, in input order; exactly one if no matrix."""
    sets = parameter_sets(template.matrix)
    if not sets:
        return [JobInstance(instance_id=InstanceId(template.id, 0), template=template)]
    return [
        JobInstance(instance_id=InstanceId(template.id, i), template=template, parameters=p)
        for i, p in enumerate(sets)
    ]


def expand(graph: ValidatedGraph) -> dict[str, list[JobInstance]]:
    """Expand every template of a validated graph, in topological order."""
    instances: dict[str, list[JobInstance]] = {}
    for job_id in graph.order:
        instances[job_id] = expand_template(graph.template(job_id))
        if len(instances[job_id]) > 1:
            logger.debug("Expanded %s into %d instances", job_id, len(instances[job_id]))
    return instances
