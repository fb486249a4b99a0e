from enum import Enum


class TriggerEvent(str, Enum):
    PULL_REQUEST = "pull_request"
    PUSH = "push"
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WORKFLOW_CALL = "workflow_call"


class RunStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILURE, RunStatus.CANCELLED)


class InstanceStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_INSTANCE_STATUSES


TERMINAL_INSTANCE_STATUSES = frozenset({
    InstanceStatus.SUCCESS,
    InstanceStatus.FAILURE,
    InstanceStatus.TIMED_OUT,
    InstanceStatus.CANCELLED,
    InstanceStatus.SKIPPED,
})


class JobStatus(str, Enum):
    """Aggregate status of all instances of one job template."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class JobCondition(str, Enum):
    ON_SUCCESS = "on_success"
    ALWAYS = "always"


class WorkerResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AdmissionOutcome(str, Enum):
    ADMITTED = "admitted"
    PREEMPTED = "preempted"
    QUEUED = "queued"
