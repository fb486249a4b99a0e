import asyncio

import pytest

from wfsched.adapters.mock import MockWorker
from wfsched.core.engine import WorkflowEngine
from wfsched.core.graph import CycleDetected
from wfsched.models.enums import InstanceStatus, JobStatus, RunStatus, TriggerEvent
from wfsched.models.graph import ConcurrencySpec, JobTemplate, WorkflowDefinition


def _tests_workflow(concurrency: ConcurrencySpec | None = None, **job_kwargs) -> WorkflowDefinition:
    return WorkflowDefinition(
        name="tests",
        concurrency=concurrency,
        jobs=[
            JobTemplate(id="tests", matrix=[{"test-name": f"t{i}"} for i in range(3)], **job_kwargs),
            JobTemplate(id="check", needs=["tests"], condition="always"),
        ],
    )


async def _until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
async def engine(worker, settings):
    eng = WorkflowEngine(worker, settings)
    yield eng
    await eng.shutdown()


async def test_submit_and_await(engine):
    run_id = await engine.submit(_tests_workflow())
    snap = await engine.await_terminal(run_id, timeout=2)
    assert snap.status == RunStatus.SUCCESS
    assert snap.group_key is None
    assert snap.job("tests").status == JobStatus.SUCCESS
    assert engine.get_status(run_id).status == RunStatus.SUCCESS
    assert [r.run_id for r in engine.list_runs()] == [run_id]


async def test_invalid_graph_rejected_before_run(engine):
    definition = WorkflowDefinition(name="bad", jobs=[
        JobTemplate(id="a", needs=["b"]),
        JobTemplate(id="b", needs=["a"]),
    ])
    with pytest.raises(CycleDetected):
        await engine.submit(definition)
    assert engine.list_runs() == []


async def test_unknown_run(engine):
    with pytest.raises(KeyError):
        engine.get_status("nope")
    with pytest.raises(KeyError):
        await engine.await_terminal("nope")


async def test_await_terminal_times_out(settings):
    engine = WorkflowEngine(MockWorker(hang={"tests"}), settings)
    run_id = await engine.submit(_tests_workflow())
    with pytest.raises(asyncio.TimeoutError):
        await engine.await_terminal(run_id, timeout=0.05)
    await engine.shutdown()
    assert engine.get_status(run_id).status == RunStatus.CANCELLED


async def test_pull_request_supersedes_run_in_same_group(settings):
    worker = MockWorker(hang={"tests"})
    engine = WorkflowEngine(worker, settings)
    concurrency = ConcurrencySpec(group="bitcoin-tests")

    run1 = await engine.submit(_tests_workflow(concurrency), TriggerEvent.PULL_REQUEST, "feature")
    await _until(lambda: worker.running.get("tests") == 3)
    worker.hang.clear()

    run2 = await engine.submit(_tests_workflow(concurrency), TriggerEvent.PULL_REQUEST, "feature")
    snap1 = await engine.await_terminal(run1, timeout=2)
    snap2 = await engine.await_terminal(run2, timeout=2)

    assert snap1.group_key == snap2.group_key == "bitcoin-tests-feature"
    assert snap1.status == RunStatus.CANCELLED
    assert snap1.cancel_reason == f"superseded by {run2}"
    assert all(i.status == InstanceStatus.CANCELLED for i in snap1.job("tests").instances)
    assert snap2.status == RunStatus.SUCCESS
    assert sorted(worker.cancelled) == ["tests[0]", "tests[1]", "tests[2]"]
    await engine.shutdown()


async def test_push_runs_queue_in_submission_order(settings):
    worker = MockWorker(default_delay=0.05)
    engine = WorkflowEngine(worker, settings)
    concurrency = ConcurrencySpec(group="bitcoin-tests")

    run1 = await engine.submit(_tests_workflow(concurrency), TriggerEvent.PUSH, "refs/heads/main")
    run2 = await engine.submit(_tests_workflow(concurrency), TriggerEvent.PUSH, "refs/heads/main")
    await _until(lambda: engine.get_status(run2).status == RunStatus.QUEUED)
    assert engine.groups.snapshot() == {
        "bitcoin-tests-refs/heads/main": {"active": run1, "queued": [run2]},
    }

    snap1 = await engine.await_terminal(run1, timeout=2)
    snap2 = await engine.await_terminal(run2, timeout=2)
    assert snap1.status == snap2.status == RunStatus.SUCCESS
    assert snap2.started_at >= snap1.finished_at
    await engine.shutdown()
    assert len(engine.groups) == 0


async def test_explicit_cancel_in_progress_overrides_trigger(settings):
    worker = MockWorker(hang={"tests"})
    engine = WorkflowEngine(worker, settings)
    concurrency = ConcurrencySpec(group="deploy", cancel_in_progress=True)

    run1 = await engine.submit(_tests_workflow(concurrency), TriggerEvent.PUSH, "main")
    await _until(lambda: worker.running.get("tests") == 3)
    worker.hang.clear()
    run2 = await engine.submit(_tests_workflow(concurrency), TriggerEvent.PUSH, "main")

    assert (await engine.await_terminal(run1, timeout=2)).status == RunStatus.CANCELLED
    assert (await engine.await_terminal(run2, timeout=2)).status == RunStatus.SUCCESS
    await engine.shutdown()


async def test_different_scopes_run_concurrently(settings):
    worker = MockWorker(default_delay=0.05)
    engine = WorkflowEngine(worker, settings)
    concurrency = ConcurrencySpec(group="bitcoin-tests")

    run1 = await engine.submit(_tests_workflow(concurrency), TriggerEvent.PULL_REQUEST, "a")
    run2 = await engine.submit(_tests_workflow(concurrency), TriggerEvent.PULL_REQUEST, "b")
    await _until(lambda: worker.running.get("tests", 0) == 6)

    assert (await engine.await_terminal(run1, timeout=2)).status == RunStatus.SUCCESS
    assert (await engine.await_terminal(run2, timeout=2)).status == RunStatus.SUCCESS
    await engine.shutdown()


async def test_group_falls_back_to_run_id(engine):
    run_id = await engine.submit(_tests_workflow(ConcurrencySpec(group="ci")))
    assert engine.get_status(run_id).group_key == f"ci-{run_id}"
    await engine.await_terminal(run_id, timeout=2)


def _deploy_workflow(**deploy_kwargs) -> WorkflowDefinition:
    return WorkflowDefinition(name="release", jobs=[
        JobTemplate(id="build"),
        JobTemplate(id="deploy", needs=["build"], concurrency_group="production", **deploy_kwargs),
    ])


async def test_job_level_group_serializes_across_runs(settings):
    worker = MockWorker(delays={"build": 0.02, "deploy": 0.05})
    engine = WorkflowEngine(worker, settings)

    run1 = await engine.submit(_deploy_workflow())
    run2 = await engine.submit(_deploy_workflow())
    snap1 = await engine.await_terminal(run1, timeout=2)
    snap2 = await engine.await_terminal(run2, timeout=2)

    assert snap1.status == snap2.status == RunStatus.SUCCESS
    assert worker.peak_running["deploy"] == 1
    assert worker.peak_running["build"] == 2
    await engine.shutdown()
    assert len(engine.groups) == 0


async def test_job_level_cancel_in_progress(settings):
    worker = MockWorker(hang={"deploy"})
    engine = WorkflowEngine(worker, settings)

    run1 = await engine.submit(_deploy_workflow(cancel_in_progress=True))
    await _until(lambda: worker.running.get("deploy") == 1)
    worker.hang.clear()
    run2 = await engine.submit(_deploy_workflow(cancel_in_progress=True))

    snap1 = await engine.await_terminal(run1, timeout=2)
    snap2 = await engine.await_terminal(run2, timeout=2)
    assert snap1.job("build").status == JobStatus.SUCCESS
    assert snap1.job("deploy").status == JobStatus.CANCELLED
    assert snap2.status == RunStatus.SUCCESS
    await engine.shutdown()


async def test_cancel_run(settings):
    worker = MockWorker(hang={"tests"})
    engine = WorkflowEngine(worker, settings)
    run_id = await engine.submit(_tests_workflow())
    await _until(lambda: worker.running.get("tests") == 3)

    snap = await engine.cancel(run_id, "user request")
    assert snap.status == RunStatus.CANCELLED
    assert snap.cancel_reason == "user request"
    assert snap.job("check").status == JobStatus.CANCELLED
    await engine.shutdown()


async def test_cancel_queued_run(settings):
    worker = MockWorker(hang={"tests"})
    engine = WorkflowEngine(worker, settings)
    concurrency = ConcurrencySpec(group="ci")

    run1 = await engine.submit(_tests_workflow(concurrency), TriggerEvent.PUSH, "main")
    run2 = await engine.submit(_tests_workflow(concurrency), TriggerEvent.PUSH, "main")
    await _until(lambda: engine.get_status(run2).status == RunStatus.QUEUED)

    await engine.cancel(run2)
    snap2 = await engine.await_terminal(run2, timeout=2)
    assert snap2.status == RunStatus.CANCELLED
    assert snap2.started_at is None
    await _until(lambda: engine.groups.snapshot()["ci-main"]["queued"] == [])
    assert engine.groups.active_holder("ci-main") == run1
    await engine.shutdown()


async def test_terminal_runs_evicted_beyond_retention(worker, settings):
    settings.max_retained_runs = 1
    engine = WorkflowEngine(worker, settings)
    first = await engine.submit(_tests_workflow())
    await engine.await_terminal(first, timeout=2)
    second = await engine.submit(_tests_workflow())
    await engine.await_terminal(second, timeout=2)
    await engine.shutdown()

    assert [r.run_id for r in engine.list_runs()] == [second]
