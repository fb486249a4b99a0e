"""Submission interface: submit runs, query and await them, cancel them."""

from __future__ import annotations

import asyncio
import logging
import uuid

from wfsched.adapters.base import Worker
from wfsched.config import Settings
from wfsched.core.concurrency import (
    ConcurrencyGroupManager,
    cancel_in_progress_for,
    derive_group_key,
)
from wfsched.core.graph import validate
from wfsched.core.scheduler import RunExecution
from wfsched.db.repository import RunRepository
from wfsched.models.enums import TriggerEvent
from wfsched.models.graph import WorkflowDefinition
from wfsched.models.run import RunSnapshot

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """
    Owns every run in the process and the shared concurrency-group registry.

    Terminal runs are archived through the optional session factory and kept
    in memory up to ``settings.max_retained_runs``.
    """

    def __init__(self, worker: Worker, settings: Settings, *, session_factory=None):
        self.worker = worker
        self.settings = settings
        self.session_factory = session_factory
        self.groups = ConcurrencyGroupManager()
        self._runs: dict[str, RunExecution] = {}
        self._drivers: dict[str, asyncio.Task] = {}

    async def submit(
        self,
        definition: WorkflowDefinition,
        trigger_event: TriggerEvent = TriggerEvent.PUSH,
        scoping_key: str | None = None,
    ) -> str:
        """Validate and start a run. Raises GraphError before anything runs."""
        graph = validate(definition)
        trigger_event = TriggerEvent(trigger_event)
        run_id = str(uuid.uuid4())

        group_key = None
        cancel_in_progress = False
        if definition.concurrency is not None:
            group_key = derive_group_key(definition.concurrency.group, scoping_key, run_id)
            cancel_in_progress = definition.concurrency.cancel_in_progress
            if cancel_in_progress is None:
                cancel_in_progress = cancel_in_progress_for(
                    trigger_event.value, self.settings.cancel_in_progress_events
                )

        run = RunExecution(
            run_id, graph, self.worker, self.groups, self.settings,
            trigger_event=trigger_event,
            scoping_key=scoping_key,
            group_key=group_key,
            cancel_in_progress=cancel_in_progress,
        )
        self._runs[run_id] = run
        self._drivers[run_id] = asyncio.create_task(self._drive(run), name=f"wfsched:{run_id}")
        logger.info(
            "Submitted run %s of %s (%s, group=%s, cancel_in_progress=%s)",
            run_id, definition.name, trigger_event.value, group_key, cancel_in_progress,
        )
        return run_id

    async def _drive(self, run: RunExecution) -> None:
        try:
            await run.run()
        except Exception:
            logger.exception("Run %s: driver failed", run.run_id)
            await run.cancel("internal error")
        finally:
            self._drivers.pop(run.run_id, None)
            await self._archive(run)
            self._evict()

    async def _archive(self, run: RunExecution) -> None:
        if self.session_factory is None or not self.settings.archive_runs:
            return
        try:
            async with self.session_factory() as session:
                repo = RunRepository(session)
                await repo.archive_run(run.to_snapshot())
                await session.commit()
        except Exception:
            logger.exception("Failed to archive run %s", run.run_id)

    def _evict(self) -> None:
        terminal = [rid for rid, run in self._runs.items() if run.is_terminal]
        for run_id in terminal[: max(0, len(terminal) - self.settings.max_retained_runs)]:
            del self._runs[run_id]

    def _get(self, run_id: str) -> RunExecution:
        try:
            return self._runs[run_id]
        except KeyError:
            raise KeyError(f"Unknown run {run_id}") from None

    def get_status(self, run_id: str) -> RunSnapshot:
        return self._get(run_id).to_snapshot()

    async def await_terminal(self, run_id: str, timeout: float | None = None) -> RunSnapshot:
        """Suspend until the run is terminal. Raises asyncio.TimeoutError."""
        run = self._get(run_id)
        await asyncio.wait_for(run.wait(), timeout=timeout)
        return run.to_snapshot()

    async def cancel(self, run_id: str, reason: str = "cancelled by request") -> RunSnapshot:
        run = self._get(run_id)
        await run.cancel(reason)
        return run.to_snapshot()

    def list_runs(self) -> list[RunSnapshot]:
        return [run.to_snapshot() for run in self._runs.values()]

    async def shutdown(self) -> None:
        """Cancel every live run and wait for their drivers to finish."""
        for run in list(self._runs.values()):
            if not run.is_terminal:
                await run.cancel("engine shutdown")
        drivers = list(self._drivers.values())
        if drivers:
            await asyncio.gather(*drivers, return_exceptions=True)
        logger.info("Engine shut down")
