import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from loyalty_engine.db.base import Base
from loyalty_engine.observability.loyalty import get_loyalty_store
from loyalty_engine.observability.scheduler import get_scheduler_store
import loyalty_engine.models  # noqa: F401

from pos_fakes import FakePos, build_gateway, seed_program


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def fake_pos() -> FakePos:
    return FakePos()


@pytest_asyncio.fixture
async def gateway(fake_pos):
    pos_gateway = build_gateway(fake_pos.handler)
    try:
        yield pos_gateway
    finally:
        await pos_gateway._client.aclose()


@pytest_asyncio.fixture
async def program(session_factory):
    async with session_factory() as session:
        return await seed_program(session)


@pytest.fixture(autouse=True)
def reset_observability():
    get_loyalty_store().reset()
    get_scheduler_store().reset()
    yield
