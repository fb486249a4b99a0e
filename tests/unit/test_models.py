import pytest
from pydantic import ValidationError

from wfsched.models.enums import JobCondition, TriggerEvent
from wfsched.models.graph import JobTemplate, MatrixSpec, WorkflowDefinition
from wfsched.models.run import RunSubmit


def _workflow_data(**overrides):
    data = {
        "name": "bitcoin-tests",
        "concurrency": {"group": "bitcoin-tests"},
        "jobs": [
            {"id": "build", "run": "make -j4"},
            {
                "id": "tests",
                "needs": "build",
                "max_parallel": 32,
                "timeout": 1800,
                "matrix": {"test-name": ["wallet", "mempool"]},
                "with": {"artifact": "bitcoind"},
            },
            {"id": "check-tests", "needs": ["tests"], "condition": "always"},
        ],
    }
    data.update(overrides)
    return data


def test_workflow_from_json():
    wf = WorkflowDefinition.model_validate(_workflow_data())
    assert wf.concurrency.group == "bitcoin-tests"
    assert wf.concurrency.cancel_in_progress is None
    tests = wf.jobs[1]
    assert tests.needs == ["build"]
    assert tests.matrix.axes == {"test-name": ["wallet", "mempool"]}
    assert tests.with_ == {"artifact": "bitcoind"}
    assert wf.jobs[2].condition == JobCondition.ALWAYS


def test_job_defaults():
    job = JobTemplate(id="build")
    assert job.condition == JobCondition.ON_SUCCESS
    assert job.timeout == 1800
    assert job.max_parallel is None
    assert job.fail_fast is False
    assert job.matrix is None
    assert job.display_name == "build"


def test_job_id_required():
    with pytest.raises(ValidationError):
        JobTemplate(id="")


def test_unknown_condition_rejected():
    with pytest.raises(ValidationError):
        JobTemplate(id="a", condition="sometimes")


def test_matrix_list_shorthand():
    matrix = MatrixSpec.model_validate([{"a": 1}, {"a": 2}])
    assert matrix.parameter_sets == [{"a": 1}, {"a": 2}]
    assert not matrix.is_empty


def test_templates_are_frozen():
    job = JobTemplate(id="a")
    with pytest.raises(ValidationError):
        job.timeout = 5


def test_run_submit_defaults():
    body = RunSubmit.model_validate({"definition": _workflow_data(), "head_ref": "feature"})
    assert body.trigger_event == TriggerEvent.PUSH
    assert body.head_ref == "feature"
    assert body.scoping_key is None
