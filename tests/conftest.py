import pytest
from httpx import ASGITransport, AsyncClient

from wfsched.adapters.mock import MockWorker
from wfsched.config import Settings
from wfsched.core.engine import WorkflowEngine
from wfsched.db.base import Base
from wfsched.db.engine import create_engine, create_session_factory
from wfsched.main import create_app


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/wfsched-test.db",
        dispatch_backoff_base=0.01,
        dispatch_backoff_max=0.05,
    )


@pytest.fixture
def worker():
    return MockWorker()


@pytest.fixture
async def db_engine(settings):
    engine = create_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
async def app(settings, worker, db_engine, session_factory):
    # ASGITransport does not run the lifespan; wire app.state by hand
    application = create_app()
    application.state.settings = settings
    application.state.engine = db_engine
    application.state.session_factory = session_factory
    workflow_engine = WorkflowEngine(worker, settings, session_factory=session_factory)
    application.state.workflow_engine = workflow_engine
    yield application
    await workflow_engine.shutdown()


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
