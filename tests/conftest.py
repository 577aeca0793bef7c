import pytest

from birrpay.config import reset_settings
from birrpay.storage.database import SQLiteDocumentStore
from tests.factories import FakeClock, RecordingStore, make_settings


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Never let a cached Settings instance leak between tests."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_store():
    return RecordingStore()


@pytest.fixture
def settings(tmp_path):
    return make_settings(data_dir=tmp_path)


@pytest.fixture
async def store():
    """In-memory SQLite document store with schema applied."""
    manager = SQLiteDocumentStore(":memory:")
    await manager.initialize()
    yield manager
    await manager.close()
