"""
Shared fixtures for the recharge engine test suites

Every test gets its own file-backed SQLite database (aiosqlite) with the full
schema, so concurrent sessions behave like separate workers.
"""

import logging

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from database import build_session_factory
from models import Base

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'recharge_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def queue_dir(tmp_path):
    path = tmp_path / "queue"
    path.mkdir()
    return path
