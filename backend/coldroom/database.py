"""Database engine, session factory, and declarative base.

All cold-room tables (counting records, boxes, pallets, balance ledger,
activity log) live on a single `Base`.  The `get_db()` dependency yields a
session that commits when the request handler returns and rolls back on
any exception.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from coldroom.config import settings

_engine_kwargs = {"echo": settings.debug}
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs.update(pool_size=20, max_overflow=10)

engine = create_async_engine(settings.database_url, **_engine_kwargs)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# ── Base class ──────────────────────────────────────────────

class Base(DeclarativeBase):
    """Declarative base for every cold-room model."""
    pass


# ── Session dependency ──────────────────────────────────────

async def get_db() -> AsyncSession:
    """Yield a session; commit on success, roll back on error."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables() -> None:
    """Create any missing tables (development / tests only)."""
    import coldroom.models  # noqa: F401  register every model on Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
