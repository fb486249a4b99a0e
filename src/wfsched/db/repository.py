from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from wfsched.models.enums import InstanceStatus
from wfsched.models.run import RunSnapshot

from .tables import RunRow

_FAILED = (InstanceStatus.FAILURE, InstanceStatus.TIMED_OUT)


class RunRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def archive_run(self, snapshot: RunSnapshot) -> RunRow:
        """Insert or overwrite the archived snapshot of a run."""
        instances = [i for job in snapshot.jobs for i in job.instances]
        values: dict[str, Any] = {
            "workflow": snapshot.workflow,
            "trigger_event": snapshot.trigger_event.value,
            "scoping_key": snapshot.scoping_key,
            "group_key": snapshot.group_key,
            "status": snapshot.status.value,
            "cancel_reason": snapshot.cancel_reason,
            "total_instances": len(instances),
            "failed_instances": sum(1 for i in instances if i.status in _FAILED),
            "snapshot": snapshot.model_dump(mode="json"),
            "created_at": snapshot.created_at,
            "started_at": snapshot.started_at,
            "finished_at": snapshot.finished_at,
        }
        row = await self.session.get(RunRow, snapshot.run_id)
        if row is None:
            row = RunRow(run_id=snapshot.run_id, **values)
            self.session.add(row)
        else:
            for key, value in values.items():
                setattr(row, key, value)
        await self.session.flush()
        return row

    async def get_run(self, run_id: str) -> RunRow | None:
        result = await self.session.execute(select(RunRow).where(RunRow.run_id == run_id))
        return result.scalar_one_or_none()

    async def get_snapshot(self, run_id: str) -> RunSnapshot | None:
        row = await self.get_run(run_id)
        if row is None:
            return None
        return RunSnapshot.model_validate(row.snapshot)

    async def list_runs(
        self,
        status: str | None = None,
        workflow: str | None = None,
        group_key: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[RunRow]:
        stmt = select(RunRow)
        if status:
            stmt = stmt.where(RunRow.status == status)
        if workflow:
            stmt = stmt.where(RunRow.workflow == workflow)
        if group_key:
            stmt = stmt.where(RunRow.group_key == group_key)
        stmt = stmt.order_by(RunRow.created_at.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def count_runs_by_status(self) -> dict[str, int]:
        stmt = select(RunRow.status, func.count()).group_by(RunRow.status)
        result = await self.session.execute(stmt)
        return dict(result.all())
