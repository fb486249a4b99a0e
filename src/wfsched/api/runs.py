import asyncio

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse

from wfsched.core.aggregator import summarize
from wfsched.core.engine import WorkflowEngine
from wfsched.core.graph import GraphError
from wfsched.db.repository import RunRepository
from wfsched.models.run import RunSnapshot, RunSubmit, RunSubmitted

from .deps import get_engine, get_repository

router = APIRouter(prefix="/runs", tags=["runs"])


def graph_error_detail(exc: GraphError) -> dict:
    return {"error": type(exc).__name__, "message": str(exc)}


async def _snapshot_or_404(
    run_id: str, engine: WorkflowEngine, repo: RunRepository
) -> RunSnapshot:
    try:
        return engine.get_status(run_id)
    except KeyError:
        pass
    snapshot = await repo.get_snapshot(run_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return snapshot


@router.post("", response_model=RunSubmitted, status_code=201)
async def submit_run(
    body: RunSubmit,
    engine: WorkflowEngine = Depends(get_engine),
):
    scoping_key = body.scoping_key or body.head_ref or body.ref
    try:
        run_id = await engine.submit(body.definition, body.trigger_event, scoping_key)
    except GraphError as exc:
        raise HTTPException(status_code=422, detail=graph_error_detail(exc))
    snapshot = engine.get_status(run_id)
    return RunSubmitted(run_id=run_id, status=snapshot.status, group_key=snapshot.group_key)


@router.get("", response_model=list[RunSnapshot])
async def list_runs(
    status: str | None = None,
    engine: WorkflowEngine = Depends(get_engine),
):
    runs = engine.list_runs()
    if status:
        runs = [r for r in runs if r.status.value == status]
    return runs


@router.get("/archive")
async def list_archived_runs(
    status: str | None = None,
    workflow: str | None = None,
    group_key: str | None = None,
    limit: int = 100,
    offset: int = 0,
    repo: RunRepository = Depends(get_repository),
):
    rows = await repo.list_runs(
        status=status, workflow=workflow, group_key=group_key, limit=limit, offset=offset
    )
    return [
        {
            "run_id": r.run_id,
            "workflow": r.workflow,
            "trigger_event": r.trigger_event,
            "group_key": r.group_key,
            "status": r.status,
            "total_instances": r.total_instances,
            "failed_instances": r.failed_instances,
            "created_at": r.created_at.isoformat() if r.created_at else None,
            "finished_at": r.finished_at.isoformat() if r.finished_at else None,
        }
        for r in rows
    ]


@router.get("/{run_id}", response_model=RunSnapshot)
async def get_run(
    run_id: str,
    engine: WorkflowEngine = Depends(get_engine),
    repo: RunRepository = Depends(get_repository),
):
    return await _snapshot_or_404(run_id, engine, repo)


@router.get("/{run_id}/summary", response_class=PlainTextResponse)
async def run_summary(
    run_id: str,
    engine: WorkflowEngine = Depends(get_engine),
    repo: RunRepository = Depends(get_repository),
):
    snapshot = await _snapshot_or_404(run_id, engine, repo)
    return summarize(snapshot) + "\n"


@router.post("/{run_id}/wait", response_model=RunSnapshot)
async def wait_for_run(
    run_id: str,
    timeout: float = 30.0,
    engine: WorkflowEngine = Depends(get_engine),
    repo: RunRepository = Depends(get_repository),
):
    try:
        return await engine.await_terminal(run_id, timeout=timeout)
    except asyncio.TimeoutError:
        return engine.get_status(run_id)
    except KeyError:
        return await _snapshot_or_404(run_id, engine, repo)


@router.post("/{run_id}/cancel", response_model=RunSnapshot)
async def cancel_run(
    run_id: str,
    reason: str = "cancelled by request",
    engine: WorkflowEngine = Depends(get_engine),
):
    try:
        return await engine.cancel(run_id, reason)
    except KeyError:
        raise HTTPException(status_code=404, detail="Run not found")
