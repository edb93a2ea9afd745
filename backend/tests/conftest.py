"""Pytest configuration and fixtures for cold-room tests.

Every test gets a fresh in-memory SQLite database (aiosqlite).  Redis is
disabled through the environment; cache tests swap in a fake client.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["CACHE_ENABLED"] = "false"
os.environ.setdefault("AUTO_CREATE_TABLES", "false")
os.environ.setdefault("DEBUG", "false")

from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

import coldroom.models  # noqa: E402,F401  register every model on Base
from coldroom.database import Base, get_db  # noqa: E402
from coldroom.main import app  # noqa: E402
from coldroom.models.cold_room_box import ColdRoomBox  # noqa: E402
from coldroom.models.counting_record import CountingRecord  # noqa: E402
from coldroom.services.size_groups import SizeKey, make_unique_key  # noqa: E402
from coldroom.utils.locks import balance_locks  # noqa: E402


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine():
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Session for tests; services commit on it like they do in production."""
    session_factory = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_session) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with overridden database dependency."""

    async def override_get_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _no_leftover_locks():
    yield
    assert len(balance_locks) == 0


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest_asyncio.fixture
async def make_record(db_session: AsyncSession):
    """Factory for committed counting records.

    `remaining` defaults to the counted totals.
    """

    async def _make(
        totals: dict[str, int],
        remaining: dict[str, int] | None = None,
        record_id: str | None = None,
        supplier_name: str = "Mwangi Farms",
        region: str | None = "Murang'a",
    ) -> CountingRecord:
        record = CountingRecord(
            supplier_name=supplier_name,
            region=region,
            counting_totals=totals,
            remaining_boxes=dict(totals) if remaining is None else remaining,
            has_remaining_boxes=True,
        )
        if record_id:
            record.id = record_id
        db_session.add(record)
        await db_session.commit()
        return record

    return _make


@pytest_asyncio.fixture
async def make_box(db_session: AsyncSession):
    """Factory for committed cold-room boxes of a record's bucket."""

    async def _make(
        record: CountingRecord,
        field: str,
        quantity: int,
        cold_room_id: str = "coldroom1",
    ) -> ColdRoomBox:
        key = SizeKey.parse(field)
        box = ColdRoomBox(
            variety=key.variety,
            box_type=key.box_type,
            grade=key.grade,
            size=key.size,
            unique_key=make_unique_key(record.id, key),
            quantity=quantity,
            cold_room_id=cold_room_id,
            supplier_name=record.supplier_name,
            region=record.region,
            source_counting_record_id=record.id,
            is_in_pallet=False,
        )
        db_session.add(box)
        await db_session.commit()
        return box

    return _make


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Pure-function tests")
    config.addinivalue_line("markers", "api: HTTP tests through the app")
    config.addinivalue_line("markers", "cache: Redis caching behaviour")
