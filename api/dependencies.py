"""
FastAPI dependencies shared by the routers
"""

from typing import AsyncGenerator, Callable
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import async_session_maker
from ingestion.extractors.remote_client import RemoteRecordClient
from ingestion.service import default_client_factory


def get_session_factory():
    """Session factory used by sync runs (one session per entity kind)"""
    return async_session_maker


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped database session"""
    async with async_session_maker() as session:
        yield session


def get_client_factory() -> Callable[[], RemoteRecordClient]:
    """Remote API client factory for sync runs"""
    return default_client_factory(async_session_maker)
