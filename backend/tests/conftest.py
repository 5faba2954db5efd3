from __future__ import annotations

import os

# Keep the module level engine off the working directory
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import uuid

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from scoredesk.core.database import Base
from scoredesk.models import CardStatus, ScratchCard
from scoredesk.services.card_store import SqlAlchemyCardStore


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cards.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def card_store(session_factory) -> SqlAlchemyCardStore:
    return SqlAlchemyCardStore(session_factory)


@pytest.fixture
def add_card(session_factory):
    async def _add(pin: str = "ABCD-1234", **overrides) -> ScratchCard:
        fields = {
            "pin": pin,
            "serial_number": f"SN-{uuid.uuid4().hex[:8].upper()}",
            "amount": 100.0,
            "status": CardStatus.ACTIVE.value,
            "max_usage": 1,
            "usage_count": 0,
        }
        fields.update(overrides)
        async with session_factory() as session:
            card = ScratchCard(**fields)
            session.add(card)
            await session.commit()
            return card

    return _add


@pytest.fixture
def load_card(session_factory):
    async def _load(pin: str) -> ScratchCard | None:
        async with session_factory() as session:
            result = await session.execute(select(ScratchCard).where(ScratchCard.pin == pin))
            return result.scalar_one_or_none()

    return _load
