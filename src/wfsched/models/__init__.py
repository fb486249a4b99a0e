from .common import StatusTransition
from .enums import (
    AdmissionOutcome,
    InstanceStatus,
    JobCondition,
    JobStatus,
    RunStatus,
    TriggerEvent,
    WorkerResult,
)
from .graph import ConcurrencySpec, JobTemplate, MatrixSpec, ParameterSet, WorkflowDefinition
from .run import InstanceSnapshot, JobSnapshot, RunSnapshot, RunSubmit, RunSubmitted

__all__ = [
    "AdmissionOutcome",
    "ConcurrencySpec",
    "InstanceSnapshot",
    "InstanceStatus",
    "JobCondition",
    "JobSnapshot",
    "JobStatus",
    "JobTemplate",
    "MatrixSpec",
    "ParameterSet",
    "RunSnapshot",
    "RunStatus",
    "RunSubmit",
    "RunSubmitted",
    "StatusTransition",
    "TriggerEvent",
    "WorkerResult",
    "WorkflowDefinition",
]
