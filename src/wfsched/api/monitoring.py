from collections import Counter

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from wfsched import __version__
from wfsched.config import Settings
from wfsched.core.engine import WorkflowEngine
from wfsched.db.repository import RunRepository

from .deps import get_engine, get_repository, get_settings

router = APIRouter(tags=["monitoring"])


@router.get("/health")
async def health():
    return {"status": "ok", "version": __version__}


@router.get("/status")
async def status(
    engine: WorkflowEngine = Depends(get_engine),
    repo: RunRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
):
    live = Counter(r.status.value for r in engine.list_runs())
    return {
        "worker_backend": settings.worker_backend,
        "live_runs_by_status": dict(live),
        "archived_runs_by_status": await repo.count_runs_by_status(),
        "concurrency_groups": len(engine.groups),
    }


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(engine: WorkflowEngine = Depends(get_engine)):
    live = Counter(r.status.value for r in engine.list_runs())
    lines = []
    lines.append("# HELP wfsched_runs Number of runs held by the engine, by status")
    lines.append("# TYPE wfsched_runs gauge")
    for status_val, count in sorted(live.items()):
        lines.append(f'wfsched_runs{{status="{status_val}"}} {count}')
    lines.append("# HELP wfsched_concurrency_groups Number of live concurrency groups")
    lines.append("# TYPE wfsched_concurrency_groups gauge")
    lines.append(f"wfsched_concurrency_groups {len(engine.groups)}")
    return "\n".join(lines) + "\n"
