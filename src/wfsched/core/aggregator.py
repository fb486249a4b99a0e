"""Status Aggregator: pure roll-up of instance statuses to job and run status.

Nothing here holds state; every function is derived from the current
instance statuses, so calling it repeatedly after the same transition yields
the same answer.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum

from wfsched.models.enums import InstanceStatus, JobCondition, JobStatus, RunStatus
from wfsched.models.graph import JobTemplate
from wfsched.models.run import JobSnapshot, RunSnapshot

_FAILED = (InstanceStatus.FAILURE, InstanceStatus.TIMED_OUT)


class Readiness(str, Enum):
    WAIT = "wait"
    READY = "ready"
    SKIP = "skip"


def job_status(statuses: Iterable[InstanceStatus]) -> JobStatus:
    """Aggregate the instance statuses of one job template."""
    statuses = list(statuses)
    if not statuses:
        return JobStatus.SKIPPED
    if not all(s.is_terminal for s in statuses):
        if any(s == InstanceStatus.RUNNING or s.is_terminal for s in statuses):
            return JobStatus.RUNNING
        return JobStatus.PENDING
    if any(s in _FAILED for s in statuses):
        return JobStatus.FAILURE
    if any(s == InstanceStatus.CANCELLED for s in statuses):
        return JobStatus.CANCELLED
    if all(s == InstanceStatus.SKIPPED for s in statuses):
        return JobStatus.SKIPPED
    return JobStatus.SUCCESS


def readiness(template: JobTemplate, prerequisites: Mapping[str, JobStatus]) -> Readiness:
    """Decide whether a pending job may run, must skip, or keeps waiting.

    prerequisites maps each needed job id to its current aggregate.
    """
    if not all(status.is_terminal for status in prerequisites.values()):
        return Readiness.WAIT
    if template.condition == JobCondition.ALWAYS:
        return Readiness.READY
    if all(status == JobStatus.SUCCESS for status in prerequisites.values()):
        return Readiness.READY
    return Readiness.SKIP


def run_status(
    instance_statuses: Mapping[str, list[InstanceStatus]],
    conditions: Mapping[str, JobCondition] | None = None,
    cancelled: bool = False,
) -> RunStatus:
    """Overall run status, or RUNNING while any instance is non-terminal.

    Only ``on_success`` templates decide failure: an ``always`` job reports
    on its upstreams and its own result does not fail the run. Templates
    missing from conditions count as ``on_success``.
    """
    conditions = conditions or {}
    every = [s for statuses in instance_statuses.values() for s in statuses]
    if not all(s.is_terminal for s in every):
        return RunStatus.RUNNING
    if cancelled:
        return RunStatus.CANCELLED

    # skipped instances are gated behind an upstream result and never count
    for job_id, statuses in instance_statuses.items():
        if conditions.get(job_id, JobCondition.ON_SUCCESS) != JobCondition.ON_SUCCESS:
            continue
        if any(s in _FAILED or s == InstanceStatus.CANCELLED for s in statuses):
            return RunStatus.FAILURE
    return RunStatus.SUCCESS


def summarize(snapshot: RunSnapshot) -> str:
    """Human-readable "check jobs" report for a run.

    Upstream failures and cancellations are reported separately so a
    superseded run does not read like a broken one.
    """
    lines = [f"{snapshot.workflow} run {snapshot.run_id}: {snapshot.status.value}"]
    failed: list[str] = []
    cancelled: list[str] = []
    for job in snapshot.jobs:
        lines.append(f"  {job.name}: {job.status.value} ({_counts(job)})")
        if job.status == JobStatus.FAILURE:
            failed.append(f"{job.name} ({_failure_detail(job)})")
        elif job.status == JobStatus.CANCELLED:
            cancelled.append(job.name)

    if failed:
        lines.append("FAILED: " + ", ".join(failed))
    if cancelled:
        reason = f" ({snapshot.cancel_reason})" if snapshot.cancel_reason else ""
        lines.append("CANCELLED: " + ", ".join(cancelled) + reason)
    if not failed and not cancelled and snapshot.status == RunStatus.SUCCESS:
        lines.append("All jobs passed")
    return "\n".join(lines)


def _counts(job: JobSnapshot) -> str:
    parts = []
    for status in InstanceStatus:
        n = job.count(status)
        if n:
            parts.append(f"{n} {status.value}")
    return ", ".join(parts) or "no instances"


def _failure_detail(job: JobSnapshot) -> str:
    parts = [f"{job.count(InstanceStatus.FAILURE)} failed"]
    timed_out = job.count(InstanceStatus.TIMED_OUT)
    if timed_out:
        parts.append(f"{timed_out} timed out")
    return ", ".join(parts)
