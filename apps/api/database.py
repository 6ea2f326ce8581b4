"""
Database engine and session factories.

Engines are built explicitly by the application lifespan (or a test fixture)
and handed to the services that need them. Nothing here opens a connection at
import time.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


Base = declarative_base()


def build_engine(database_url: Optional[str] = None, **overrides: Any) -> AsyncEngine:
    """Create an async engine with a bounded connection pool."""
    url = database_url or settings.DATABASE_URL
    options: Dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # sqlite waits on its own file lock instead of a server-side pool.
        options["connect_args"] = {"timeout": 30}
    else:
        options.update(
            pool_size=int(settings.DB_POOL_SIZE),
            max_overflow=int(settings.DB_MAX_OVERFLOW),
            pool_timeout=int(settings.DB_POOL_TIMEOUT_SECONDS),
        )
    options.update(overrides)
    return create_async_engine(url, **options)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session_maker(request: Request) -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency resolving the session factory built at startup."""
    session_maker = getattr(request.app.state, "session_maker", None)
    if session_maker is None:
        raise HTTPException(status_code=503, detail="Database is not initialised.")
    return session_maker
