import asyncio
import sys
from datetime import datetime, timedelta, timezone

import pytest

from wfsched.adapters.base import DispatchError
from wfsched.adapters.local import OUTPUT_TAIL_CHARS, LocalProcessWorker, matrix_env
from wfsched.core.matrix import InstanceId, JobInstance
from wfsched.models.enums import WorkerResult
from wfsched.models.graph import JobTemplate

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")


def _instance(command: str | None, **params) -> JobInstance:
    return JobInstance(
        InstanceId("job", 0),
        JobTemplate(id="job", run=command),
        parameters=params,
    )


def _deadline():
    return datetime.now(timezone.utc) + timedelta(minutes=1)


def test_matrix_env_names():
    assert matrix_env({"test-name": "wallet", "debug": True, "n": 3}) == {
        "MATRIX_TEST_NAME": "wallet",
        "MATRIX_DEBUG": "true",
        "MATRIX_N": "3",
    }


async def test_no_command_succeeds():
    outcome = await LocalProcessWorker().execute(_instance(None), _deadline(), {})
    assert outcome.status == WorkerResult.SUCCESS


async def test_command_exit_code_maps_to_result():
    worker = LocalProcessWorker()
    ok = await worker.execute(_instance("echo hello"), _deadline(), {})
    assert ok.status == WorkerResult.SUCCESS
    assert ok.metadata["output"].strip() == "hello"

    failed = await worker.execute(_instance("exit 3"), _deadline(), {})
    assert failed.status == WorkerResult.FAILURE
    assert failed.metadata["exit_code"] == 3


async def test_environment_and_matrix_passed():
    inst = _instance('echo "$GREETING $MATRIX_TEST_NAME $WFSCHED_INSTANCE_ID"', **{"test-name": "wallet"})
    outcome = await LocalProcessWorker().execute(inst, _deadline(), {"GREETING": "hi"})
    assert outcome.metadata["output"].strip() == "hi wallet job[0]"


async def test_output_is_truncated():
    inst = _instance(f"head -c {OUTPUT_TAIL_CHARS * 2} /dev/zero | tr '\\0' x")
    outcome = await LocalProcessWorker().execute(inst, _deadline(), {})
    assert len(outcome.metadata["output"]) == OUTPUT_TAIL_CHARS


async def test_full_slots_raise_dispatch_error():
    worker = LocalProcessWorker(max_processes=1)
    first = asyncio.create_task(worker.execute(_instance("sleep 5"), _deadline(), {}))
    while worker.active < 1:
        await asyncio.sleep(0.01)

    other = JobInstance(InstanceId("job", 1), JobTemplate(id="job", run="true"))
    with pytest.raises(DispatchError):
        await worker.execute(other, _deadline(), {})

    first.cancel()
    with pytest.raises(asyncio.CancelledError):
        await first
    assert worker.active == 0


async def test_cancel_kills_process():
    worker = LocalProcessWorker()
    inst = _instance("sleep 5")
    task = asyncio.create_task(worker.execute(inst, _deadline(), {}))
    while worker.active < 1:
        await asyncio.sleep(0.01)

    await worker.cancel(inst)
    outcome = await asyncio.wait_for(task, timeout=2)
    assert outcome.status == WorkerResult.FAILURE
    assert outcome.metadata["exit_code"] < 0
