"""
Database Configuration and Session Management
============================================

Async engine and session factories for the recharge system of record, plus
a second engine for the fleet database the candidate queries run against.
"""

import logging
from contextlib import asynccontextmanager
from typing import Dict, Any

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker, AsyncEngine

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def to_async_url(url: str) -> str:
    """Rewrite a plain driver URL to its async driver"""
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")
    if url.startswith('postgresql://') or url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)
        url = url.replace('postgresql://', 'postgresql+asyncpg://', 1)
        # asyncpg uses 'ssl' instead of 'sslmode'
        url = url.replace('sslmode=require', 'ssl=require')
        url = url.replace('sslmode=disable', 'ssl=disable')
    elif url.startswith('sqlite://') and '+aiosqlite' not in url:
        url = url.replace('sqlite://', 'sqlite+aiosqlite://', 1)
    return url


def _engine_kwargs(url: str) -> Dict[str, Any]:
    if url.startswith('sqlite'):
        return {"echo": False}
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_pre_ping": True,   # Validate connections before use
        "pool_recycle": 3600,
        "pool_timeout": 30,
        "echo": False,
        "connect_args": {
            "server_settings": {"application_name": "recharge_engine"},
            "timeout": 10,
            "command_timeout": Config.DATABASE_TIMEOUT_SECONDS,
        },
    }


def build_engine(url: str) -> AsyncEngine:
    async_url = to_async_url(url)
    return create_async_engine(async_url, **_engine_kwargs(async_url))


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # Rows are read after commit in background tasks
    )


async_engine = build_engine(Config.DATABASE_URL)
AsyncSessionLocal = build_session_factory(async_engine)

if Config.FLEET_DATABASE_URL == Config.DATABASE_URL:
    fleet_engine = async_engine
    FleetSessionLocal = AsyncSessionLocal
else:
    fleet_engine = build_engine(Config.FLEET_DATABASE_URL)
    FleetSessionLocal = build_session_factory(fleet_engine)


@asynccontextmanager
async def async_managed_session(session_factory: async_sessionmaker = None):
    """
    Async session that commits on success, rolls back on error and always closes.

    Usage:
        async with async_managed_session() as session:
            session.add(row)
    """
    factory = session_factory or AsyncSessionLocal
    session = factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: AsyncEngine = None):
    """Create all recharge tables if they do not exist"""
    target = engine or async_engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ DATABASE_TABLES_READY: recargas, detalle_recargas, recargas_process_locks, recargas_metricas")


async def dispose_engines():
    await async_engine.dispose()
    if fleet_engine is not async_engine:
        await fleet_engine.dispose()
