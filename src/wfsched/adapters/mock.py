import asyncio
from datetime import datetime
from typing import Any

from wfsched.models.enums import WorkerResult

from .base import DispatchError, Worker, WorkerOutcome


class MockWorker(Worker):
    """Scripted worker for tests and the default app wiring.

    Behaviour is looked up by instance id (``"job[0]"``) first, then by job id:
      outcomes     -> WorkerResult to report (default success)
      delays       -> seconds before reporting
      hang         -> never reports; only cancellation ends it
      unavailable  -> number of DispatchErrors raised before accepting
    """

    def __init__(
        self,
        outcomes: dict[str, WorkerResult] | None = None,
        delays: dict[str, float] | None = None,
        hang: set[str] | None = None,
        unavailable: dict[str, int] | None = None,
        default_delay: float = 0.0,
    ):
        self.outcomes = outcomes or {}
        self.delays = delays or {}
        self.hang = hang or set()
        self.unavailable = dict(unavailable or {})
        self.default_delay = default_delay
        self.calls: list[tuple[str, tuple, dict]] = []
        self.running: dict[str, int] = {}
        self.peak_running: dict[str, int] = {}
        self.cancelled: list[str] = []

    def _lookup(self, table: dict, instance) -> Any:
        key = str(instance.instance_id)
        if key in table:
            return table[key]
        return table.get(instance.job_id)

    async def execute(self, instance, deadline: datetime, env: dict[str, str]) -> WorkerOutcome:
        key = str(instance.instance_id)
        self.calls.append(("execute", (key,), {"deadline": deadline, "env": dict(env)}))

        remaining = self._lookup(self.unavailable, instance)
        if remaining:
            name = key if key in self.unavailable else instance.job_id
            self.unavailable[name] = remaining - 1
            raise DispatchError(f"mock worker unavailable for {key}")

        job = instance.job_id
        self.running[job] = self.running.get(job, 0) + 1
        self.peak_running[job] = max(self.peak_running.get(job, 0), self.running[job])
        try:
            if key in self.hang or job in self.hang:
                await asyncio.get_running_loop().create_future()
            delay = self._lookup(self.delays, instance)
            await asyncio.sleep(self.default_delay if delay is None else delay)
        finally:
            self.running[job] -= 1

        status = self._lookup(self.outcomes, instance) or WorkerResult.SUCCESS
        return WorkerOutcome(status=WorkerResult(status), metadata={"worker": "mock"})

    async def cancel(self, instance) -> None:
        key = str(instance.instance_id)
        self.calls.append(("cancel", (key,), {}))
        self.cancelled.append(key)
