import pytest

from wfsched.core.graph import (
    CycleDetected,
    DuplicateJob,
    GraphError,
    InvalidMaxParallel,
    MAX_JOB_TIMEOUT,
    InvalidTimeout,
    UnknownDependency,
    validate,
)
from wfsched.models.graph import JobTemplate, WorkflowDefinition


def _workflow(*jobs: JobTemplate) -> WorkflowDefinition:
    return WorkflowDefinition(name="wf", jobs=list(jobs))


def test_linear_order():
    graph = validate(_workflow(
        JobTemplate(id="check", needs=["test"]),
        JobTemplate(id="build"),
        JobTemplate(id="test", needs=["build"]),
    ))
    assert graph.order == ["build", "test", "check"]


def test_ties_keep_declaration_order():
    graph = validate(_workflow(
        JobTemplate(id="b"),
        JobTemplate(id="a"),
        JobTemplate(id="c", needs=["a", "b"]),
        JobTemplate(id="d", needs=["b"]),
    ))
    assert graph.order == ["b", "a", "d", "c"]
    assert graph.dependents["b"] == ["c", "d"]


def test_needs_accepts_single_string():
    graph = validate(_workflow(
        JobTemplate(id="build"),
        JobTemplate(id="test", needs="build"),
    ))
    assert graph.needs("test") == ["build"]


def test_duplicate_needs_are_collapsed():
    graph = validate(_workflow(
        JobTemplate(id="build"),
        JobTemplate(id="test", needs=["build", "build"]),
    ))
    assert graph.needs("test") == ["build"]
    assert graph.dependents["build"] == ["test"]


def test_empty_workflow_is_valid():
    graph = validate(_workflow())
    assert graph.order == []


def test_unknown_dependency():
    with pytest.raises(UnknownDependency) as exc:
        validate(_workflow(JobTemplate(id="test", needs=["build"])))
    assert exc.value.job_id == "test"
    assert exc.value.dependency == "build"


def test_cycle_detected():
    with pytest.raises(CycleDetected) as exc:
        validate(_workflow(
            JobTemplate(id="root"),
            JobTemplate(id="a", needs=["root", "c"]),
            JobTemplate(id="b", needs=["a"]),
            JobTemplate(id="c", needs=["b"]),
        ))
    cycle = exc.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "root" not in cycle


def test_self_dependency_is_a_cycle():
    with pytest.raises(CycleDetected) as exc:
        validate(_workflow(JobTemplate(id="a", needs=["a"])))
    assert exc.value.cycle == ["a", "a"]


@pytest.mark.parametrize("timeout", [0, -5, float("nan"), float("inf"), MAX_JOB_TIMEOUT + 1, 1e12])
def test_out_of_range_timeout(timeout):
    with pytest.raises(InvalidTimeout) as exc:
        validate(_workflow(JobTemplate(id="a", timeout=timeout)))
    assert exc.value.job_id == "a"


def test_invalid_max_parallel():
    with pytest.raises(InvalidMaxParallel):
        validate(_workflow(JobTemplate(id="a", max_parallel=0)))


def test_duplicate_job_ids():
    with pytest.raises(DuplicateJob) as exc:
        validate(_workflow(JobTemplate(id="a"), JobTemplate(id="a")))
    assert exc.value.job_ids == ["a"]


def test_graph_errors_share_a_base():
    with pytest.raises(GraphError):
        validate(_workflow(JobTemplate(id="a", needs=["missing"])))
    assert issubclass(GraphError, ValueError)


def test_maximum_timeout_accepted():
    graph = validate(_workflow(JobTemplate(id="a", timeout=MAX_JOB_TIMEOUT)))
    assert graph.order == ["a"]
