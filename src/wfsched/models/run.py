from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from .common import StatusTransition
from .enums import InstanceStatus, JobCondition, JobStatus, RunStatus, TriggerEvent
from .graph import ParameterSet, WorkflowDefinition


class InstanceSnapshot(BaseModel):
    instance_id: str
    index: int
    parameters: ParameterSet = {}
    status: InstanceStatus
    attempts: int = 0
    error: Optional[str] = None
    metadata: dict[str, Any] = {}
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    transitions: list[StatusTransition] = []


class JobSnapshot(BaseModel):
    job_id: str
    name: str
    condition: JobCondition
    needs: list[str] = []
    status: JobStatus
    instances: list[InstanceSnapshot] = []

    def count(self, status: InstanceStatus) -> int:
        return sum(1 for i in self.instances if i.status == status)


class RunSnapshot(BaseModel):
    """Point-in-time view of a run, sufficient for a CI status page."""

    run_id: str
    workflow: str
    trigger_event: TriggerEvent
    scoping_key: Optional[str] = None
    group_key: Optional[str] = None
    status: RunStatus
    cancel_reason: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    jobs: list[JobSnapshot] = []

    def job(self, job_id: str) -> JobSnapshot:
        for job in self.jobs:
            if job.job_id == job_id:
                return job
        raise KeyError(job_id)


class RunSubmit(BaseModel):
    """API input for submitting a run."""

    definition: WorkflowDefinition
    trigger_event: TriggerEvent = TriggerEvent.PUSH
    scoping_key: Optional[str] = None
    head_ref: Optional[str] = None
    ref: Optional[str] = None


class RunSubmitted(BaseModel):
    run_id: str
    status: RunStatus
    group_key: Optional[str] = None
