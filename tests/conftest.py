"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dlwatch.db.base import Base
from dlwatch.db.models import Account, AutomationRule
from helpers.fakes import FakeCipher, FakeRemote, FrozenClock


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """File-backed SQLite database with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'dlwatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def cipher() -> FakeCipher:
    return FakeCipher()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def add_account(
    session_factory: async_sessionmaker[AsyncSession], cipher: FakeCipher
) -> Callable[..., Awaitable[int]]:
    """Insert an account whose credential decrypts to ``token``; returns its id."""

    async def _add(
        token: str,
        *,
        next_poll_at: datetime | None = None,
        last_polled_at: datetime | None = None,
        is_active: bool = True,
        credential: str | None = None,
    ) -> int:
        async with session_factory() as session:
            account = Account(
                credential_encrypted=credential if credential is not None else cipher.encrypt(token),
                is_active=is_active,
                next_poll_at=next_poll_at,
                last_polled_at=last_polled_at,
            )
            session.add(account)
            await session.commit()
            return account.id

    return _add


@pytest.fixture
def add_rule(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[int]]:
    """Insert an automation rule; returns its id."""

    async def _add(account_id: int, **fields: Any) -> int:
        values: dict[str, Any] = {
            "name": "stop seeding finished",
            "enabled": True,
            "target_type": "torrent",
            "conditions": [{"type": "PROGRESS", "operator": "gte", "value": 100}],
            "action": {"type": "stop_seeding"},
            "cooldown_minutes": None,
        }
        values.update(fields)
        async with session_factory() as session:
            rule = AutomationRule(account_id=account_id, **values)
            session.add(rule)
            await session.commit()
            return rule.id

    return _add
