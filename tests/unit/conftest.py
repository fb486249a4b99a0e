import pytest

from wfsched.adapters.mock import MockWorker
from wfsched.config import Settings
from wfsched.core.concurrency import ConcurrencyGroupManager


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite+aiosqlite://",
        archive_runs=False,
        dispatch_max_attempts=3,
        dispatch_backoff_base=0.01,
        dispatch_backoff_max=0.05,
    )


@pytest.fixture
def worker():
    return MockWorker()


@pytest.fixture
def groups():
    return ConcurrencyGroupManager()
