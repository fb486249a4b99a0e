"""Scheduler/Executor: drives the instances of one run to completion.

Every status transition of a run happens while holding ``RunExecution._lock``
and inside synchronous helpers, so two instances finishing at the same time
cannot interleave their readiness or aggregate computations. Workers run in
one task per instance; their results come back by awaiting the worker
coroutine, never by blocking the loop.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from wfsched.adapters.base import DispatchError, Worker
from wfsched.config import Settings
from wfsched.core.aggregator import Readiness, job_status, readiness, run_status
from wfsched.core.concurrency import AdmissionDecision, ConcurrencyGroupManager
from wfsched.core.graph import ValidatedGraph
from wfsched.core.matrix import JobInstance, expand
from wfsched.models.enums import (
    AdmissionOutcome,
    InstanceStatus,
    JobStatus,
    RunStatus,
    TriggerEvent,
    WorkerResult,
)
from wfsched.models.run import JobSnapshot, RunSnapshot

logger = logging.getLogger(__name__)

_FAILED = (InstanceStatus.FAILURE, InstanceStatus.TIMED_OUT)


class JobLease:
    """Holder of a job-level concurrency group for one (run, job) pair."""

    def __init__(self, run: RunExecution, job_id: str):
        self.run = run
        self.job_id = job_id
        self.holder_id = f"{run.run_id}/{job_id}"

    async def preempt(self, group_key: str, reason: str) -> None:
        await self.run.cancel_job(self.job_id, reason)


class RunExecution:
    """One run: its instance graph, admission, dispatch and completion."""

    def __init__(
        self,
        run_id: str,
        graph: ValidatedGraph,
        worker: Worker,
        groups: ConcurrencyGroupManager,
        settings: Settings,
        *,
        trigger_event: TriggerEvent = TriggerEvent.PUSH,
        scoping_key: str | None = None,
        group_key: str | None = None,
        cancel_in_progress: bool = False,
    ):
        self.run_id = run_id
        self.holder_id = run_id
        self.graph = graph
        self.worker = worker
        self.groups = groups
        self.settings = settings
        self.trigger_event = trigger_event
        self.scoping_key = scoping_key
        self.group_key = group_key
        self.cancel_in_progress = cancel_in_progress

        self.instances: dict[str, list[JobInstance]] = expand(graph)
        self.status = RunStatus.PENDING
        self.cancel_reason: str | None = None
        self.created_at = datetime.now(timezone.utc)
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None

        self._lock = asyncio.Lock()
        self._done = asyncio.Event()
        self._cancelled = False
        self._started = False
        self._tasks: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._admission: AdmissionDecision | None = None

        # job-level concurrency groups
        self._leases: dict[str, JobLease] = {}
        self._lease_decisions: dict[str, AdmissionDecision] = {}
        self._leased: set[str] = set()
        self._released: set[str] = set()

    # ── Lifecycle ───────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self._done.is_set()

    async def run(self) -> RunStatus:
        """Admit the run to its group, execute it, release its groups."""
        try:
            if self.group_key and not self._done.is_set():
                self._admission = await self.groups.admit(
                    self.group_key, self.cancel_in_progress, self
                )
                if self._admission.outcome == AdmissionOutcome.QUEUED:
                    async with self._lock:
                        if not self._done.is_set():
                            self.status = RunStatus.QUEUED
                if not await self._admission.wait():
                    await self.cancel(f"dropped from concurrency group {self.group_key}")

            async with self._lock:
                if not self._done.is_set():
                    self._started = True
                    self.status = RunStatus.RUNNING
                    self.started_at = datetime.now(timezone.utc)
                    logger.info("Run %s: started (%s)", self.run_id, self.graph.definition.name)
                    self._evaluate()

            await self._done.wait()
        finally:
            await self._release_groups()
        return self.status

    async def wait(self) -> RunStatus:
        await self._done.wait()
        return self.status

    async def cancel(self, reason: str = "cancelled by request") -> None:
        """Cancel every non-terminal instance. The run ends ``cancelled``."""
        async with self._lock:
            if self._done.is_set():
                return
            self._cancelled = True
            self.cancel_reason = reason
            if self._admission is not None:
                self._admission.abandon()
            for decision in self._lease_decisions.values():
                decision.abandon()
            for instances in self.instances.values():
                for inst in instances:
                    self._cancel_instance(inst, reason)
            logger.warning("Run %s: cancelled (%s)", self.run_id, reason)
            self._check_finished()

    async def preempt(self, group_key: str, reason: str) -> None:
        await self.cancel(reason)

    async def cancel_job(self, job_id: str, reason: str) -> None:
        """Cancel the non-terminal instances of one job (lease preemption)."""
        async with self._lock:
            decision = self._lease_decisions.get(job_id)
            if decision is not None:
                decision.abandon()
            for inst in self.instances[job_id]:
                self._cancel_instance(inst, reason)
            self._evaluate()

    async def _release_groups(self) -> None:
        for job_id in list(self._leases):
            await self._release_lease(job_id)
        if self.group_key:
            await self.groups.release(self.group_key, self)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ── Readiness / dispatch (call with the lock held) ──────────

    def _evaluate(self) -> None:
        """Re-evaluate readiness, dispatch ready instances, detect completion.

        Idempotent: calling it again without a new terminal transition
        changes nothing.
        """
        if self._done.is_set() or not self._started:
            return

        changed = True
        while changed:
            changed = False
            for job_id in self.graph.order:
                pending = [i for i in self.instances[job_id] if i.status == InstanceStatus.PENDING]
                if not pending:
                    continue
                prerequisites = {
                    dep: self.job_status(dep) for dep in self.graph.needs(job_id)
                }
                decision = readiness(self.graph.template(job_id), prerequisites)
                if decision == Readiness.WAIT:
                    continue
                new_status = (
                    InstanceStatus.READY if decision == Readiness.READY else InstanceStatus.SKIPPED
                )
                for inst in pending:
                    inst.transition(new_status)
                if decision == Readiness.SKIP:
                    logger.info(
                        "Run %s: %s skipped (prerequisites %s)",
                        self.run_id, job_id,
                        {k: v.value for k, v in prerequisites.items()},
                    )
                changed = True

        for job_id in self.graph.order:
            self._dispatch_job(job_id)
        self._schedule_lease_releases()
        self._check_finished()

    def _dispatch_job(self, job_id: str) -> None:
        template = self.graph.template(job_id)
        ready = [i for i in self.instances[job_id] if i.status == InstanceStatus.READY]
        if not ready:
            return

        if template.concurrency_group:
            if job_id not in self._leases:
                self._leases[job_id] = JobLease(self, job_id)
                self._spawn(self._acquire_lease(job_id))
            if job_id not in self._leased:
                return

        running = sum(1 for i in self.instances[job_id] if i.status == InstanceStatus.RUNNING)
        limit = template.max_parallel
        for inst in ready:  # matrix order
            if limit is not None and running >= limit:
                break
            inst.transition(InstanceStatus.RUNNING)
            self._tasks[str(inst.instance_id)] = asyncio.create_task(
                self._execute(inst), name=f"wfsched:{self.run_id}:{inst.instance_id}"
            )
            running += 1

    def _cancel_instance(self, inst: JobInstance, reason: str) -> None:
        was_running = inst.status == InstanceStatus.RUNNING
        if not inst.transition(InstanceStatus.CANCELLED, error=reason):
            return
        task = self._tasks.pop(str(inst.instance_id), None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        if was_running:
            self._spawn(self.worker.cancel(inst))

    def _record(
        self,
        inst: JobInstance,
        status: InstanceStatus,
        error: str | None = None,
        metadata: dict | None = None,
    ) -> None:
        """Apply a worker-side terminal outcome; late outcomes are discarded."""
        self._tasks.pop(str(inst.instance_id), None)
        if not inst.transition(status, error=error):
            logger.debug(
                "Run %s: discarding %s for %s (already %s)",
                self.run_id, status.value, inst.instance_id, inst.status.value,
            )
            return
        if metadata:
            inst.metadata.update(metadata)
        logger.info("Run %s: %s -> %s", self.run_id, inst.instance_id, status.value)

        if status in _FAILED and inst.template.fail_fast:
            for sibling in self.instances[inst.job_id]:
                self._cancel_instance(sibling, f"fail-fast: {inst.instance_id} {status.value}")
        self._evaluate()

    def _check_finished(self) -> None:
        if self._done.is_set():
            return
        status = run_status(
            {job_id: [i.status for i in insts] for job_id, insts in self.instances.items()},
            {job_id: self.graph.template(job_id).condition for job_id in self.instances},
            cancelled=self._cancelled,
        )
        if not status.is_terminal:
            return
        self.status = status
        self.finished_at = datetime.now(timezone.utc)
        self._done.set()
        logger.info("Run %s: finished %s", self.run_id, status.value)

    # ── Instance execution ──────────────────────────────────────

    async def _execute(self, inst: JobInstance) -> None:
        template = inst.template
        try:
            deadline = inst.started_at + timedelta(seconds=template.timeout)
            env = {**self.graph.definition.env, **template.env}
            work = asyncio.create_task(
                self._dispatch(inst, deadline, env),
                name=f"wfsched:{self.run_id}:{inst.instance_id}:worker",
            )
            try:
                done, _ = await asyncio.wait({work}, timeout=template.timeout)
            except asyncio.CancelledError:
                work.cancel()
                self._track(work)
                raise

            if not done:
                # the worker is not awaited; it may take its time to stop
                work.cancel()
                self._track(work)
                async with self._lock:
                    if inst.status == InstanceStatus.RUNNING:
                        logger.error(
                            "ALERT [timeout] run %s: %s exceeded %gs",
                            self.run_id, inst.instance_id, template.timeout,
                        )
                        self._spawn(self.worker.cancel(inst))
                    self._record(
                        inst, InstanceStatus.TIMED_OUT,
                        error=f"timed out after {template.timeout:g}s",
                    )
                return
            if work.cancelled():
                raise RuntimeError("worker call was cancelled")
            outcome = work.result()
        except DispatchError as exc:
            async with self._lock:
                self._record(inst, InstanceStatus.FAILURE, error=f"dispatch failed: {exc}")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Run %s: worker error on %s", self.run_id, inst.instance_id)
            async with self._lock:
                self._record(inst, InstanceStatus.FAILURE, error=str(exc) or type(exc).__name__)
        else:
            status = (
                InstanceStatus.SUCCESS
                if outcome.status == WorkerResult.SUCCESS
                else InstanceStatus.FAILURE
            )
            async with self._lock:
                self._record(inst, status, metadata=outcome.metadata)

    async def _dispatch(self, inst: JobInstance, deadline: datetime, env: dict[str, str]):
        """Hand the instance to the worker, retrying while it is unavailable."""
        attempts = max(1, self.settings.dispatch_max_attempts)
        for attempt in range(attempts):
            inst.attempts = attempt + 1
            try:
                return await self.worker.execute(inst, deadline, env)
            except DispatchError as exc:
                if attempt == attempts - 1:
                    raise
                wait = min(
                    self.settings.dispatch_backoff_base * (2 ** attempt),
                    self.settings.dispatch_backoff_max,
                )
                logger.warning(
                    "Dispatch of %s failed (attempt %d/%d): %s, retrying in %.1fs",
                    inst.instance_id, attempt + 1, attempts, exc, wait,
                )
                await asyncio.sleep(wait)

    # ── Job-level concurrency leases ────────────────────────────

    async def _acquire_lease(self, job_id: str) -> None:
        template = self.graph.template(job_id)
        lease = self._leases[job_id]
        if self._done.is_set():
            return
        decision = await self.groups.admit(
            template.concurrency_group, template.cancel_in_progress, lease
        )
        self._lease_decisions[job_id] = decision
        admitted = await decision.wait()
        async with self._lock:
            usable = (
                admitted
                and not self._cancelled
                and not self.job_status(job_id).is_terminal
            )
            if usable:
                self._leased.add(job_id)
            else:
                for inst in self.instances[job_id]:
                    self._cancel_instance(
                        inst, f"dropped from concurrency group {template.concurrency_group}"
                    )
            self._evaluate()
        if not usable:
            await self.groups.release(template.concurrency_group, lease)

    def _schedule_lease_releases(self) -> None:
        for job_id in self._leases:
            if job_id not in self._released and self.job_status(job_id).is_terminal:
                self._spawn(self._release_lease(job_id))

    async def _release_lease(self, job_id: str) -> None:
        if job_id in self._released:
            return
        self._released.add(job_id)
        template = self.graph.template(job_id)
        await self.groups.release(template.concurrency_group, self._leases[job_id])

    def _spawn(self, coro) -> None:
        self._track(asyncio.create_task(coro))

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Run %s: background task failed: %r", self.run_id, task.exception())

    # ── Views ───────────────────────────────────────────────────

    def job_status(self, job_id: str) -> JobStatus:
        return job_status(i.status for i in self.instances[job_id])

    def to_snapshot(self) -> RunSnapshot:
        jobs = []
        for job_id in self.graph.order:
            template = self.graph.template(job_id)
            jobs.append(JobSnapshot(
                job_id=job_id,
                name=template.display_name,
                condition=template.condition,
                needs=self.graph.needs(job_id),
                status=self.job_status(job_id),
                instances=[i.to_snapshot() for i in self.instances[job_id]],
            ))
        return RunSnapshot(
            run_id=self.run_id,
            workflow=self.graph.definition.name,
            trigger_event=self.trigger_event,
            scoping_key=self.scoping_key,
            group_key=self.group_key,
            status=self.status,
            cancel_reason=self.cancel_reason,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            jobs=jobs,
        )
