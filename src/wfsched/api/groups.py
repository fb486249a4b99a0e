from fastapi import APIRouter, Depends

from wfsched.core.engine import WorkflowEngine

from .deps import get_engine

router = APIRouter(prefix="/concurrency", tags=["concurrency"])


@router.get("/groups")
async def list_groups(engine: WorkflowEngine = Depends(get_engine)):
    return engine.groups.snapshot()
