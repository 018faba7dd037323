"""
FastAPI dependency injection.

An endpoint declares `db: AsyncSession = Depends(get_db)`; FastAPI opens the
session before the endpoint runs and closes it afterwards. Tests override
get_db with a session bound to a throwaway SQLite database.
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from models.base import AsyncSessionLocal


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yields an async database session, auto-closes when the request ends."""
    async with AsyncSessionLocal() as session:
        yield session
