from fastapi import APIRouter

from . import graphs, groups, monitoring, runs

api_router = APIRouter()
api_router.include_router(runs.router)
api_router.include_router(graphs.router)
api_router.include_router(groups.router)
api_router.include_router(monitoring.router)
