"""
Database Session Management

Async SQLAlchemy engine and session factory for the SQL state store.

Repositories use ``Database.session()`` as an async context manager; a
session passed in by the caller is reused without touching its lifecycle:

```python
async with db.session() as session:
    result = await session.execute(select(StateRecord))
# Auto-committed (rolled back on error) and closed
```

ENVIRONMENT VARIABLES
---------------------

- DATABASE_URL: async SQLAlchemy URL, e.g. sqlite+aiosqlite:///./companion.db
- SQL_NULLPOOL: Use NullPool (true) or the default pool (false) - default: true
- SQL_ECHO: Log all SQL statements (true/false) - default: false
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from .base import Base

logger = logging.getLogger("companion.db.session")


def normalize_database_url(url: str) -> str:
    """Map plain driver URLs onto their async drivers."""
    if url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine_for_url(url: str, echo: Optional[bool] = None) -> AsyncEngine:
    url = normalize_database_url(url)
    if echo is None:
        echo = os.getenv("SQL_ECHO", "false").lower() == "true"
    engine_kwargs = {"echo": echo}

    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:")):
        # One shared connection, otherwise every session sees a fresh empty database
        engine_kwargs["poolclass"] = StaticPool
        engine_kwargs["connect_args"] = {"check_same_thread": False}
    elif os.getenv("SQL_NULLPOOL", "true").lower() == "true":
        engine_kwargs["poolclass"] = NullPool
    else:
        engine_kwargs["pool_pre_ping"] = True

    return create_async_engine(url, **engine_kwargs)


class Database:
    """Engine plus session factory for one database URL."""

    def __init__(self, url: str, echo: Optional[bool] = None):
        self.url = normalize_database_url(url)
        self.engine = create_engine_for_url(self.url, echo=echo)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def session(self, session: Optional[AsyncSession] = None) -> AsyncIterator[AsyncSession]:
        """
        Yield a session. A caller-provided session is yielded as-is; otherwise a
        new one is created and committed, rolled back on error, and closed.
        """
        if session is not None:
            yield session
            return
        async with self.session_factory() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    async def create_all(self) -> None:
        """Create tables that do not exist yet."""
        from . import models  # noqa: F401  (registers tables on Base.metadata)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ensured")

    async def dispose(self) -> None:
        await self.engine.dispose()
