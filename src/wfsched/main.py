import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from wfsched import __version__
from wfsched.adapters.base import Worker
from wfsched.adapters.mock import MockWorker
from wfsched.api.router import api_router
from wfsched.config import Settings
from wfsched.core.engine import WorkflowEngine
from wfsched.db.base import Base
from wfsched.db.engine import create_engine, create_session_factory

logger = logging.getLogger(__name__)


def build_worker(settings: Settings) -> Worker:
    """Build the worker backend: local subprocesses or the scripted mock."""
    if settings.worker_backend == "local":
        from wfsched.adapters.local import LocalProcessWorker

        return LocalProcessWorker(settings.local_max_processes, settings.local_shell_cwd)
    if settings.worker_backend != "mock":
        raise ValueError(f"Unknown worker backend '{settings.worker_backend}'")
    return MockWorker()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.settings
    logging.basicConfig(level=getattr(logging, settings.log_level.upper()))

    # Database
    engine = create_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = create_session_factory(engine)
    app.state.engine = engine
    app.state.session_factory = session_factory

    workflow_engine = WorkflowEngine(
        build_worker(settings), settings, session_factory=session_factory
    )
    app.state.workflow_engine = workflow_engine

    logger.info("wfsched v%s started (%s worker)", __version__, settings.worker_backend)

    yield

    # Shutdown
    await workflow_engine.shutdown()
    await engine.dispose()
    logger.info("wfsched shut down")


def create_app() -> FastAPI:
    settings = Settings()
    app = FastAPI(
        title="wfsched",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.include_router(api_router, prefix=settings.api_prefix)
    return app
