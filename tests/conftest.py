from contextlib import asynccontextmanager
from datetime import datetime, timezone
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from campaign_engine.app import create_app
from campaign_engine.db.base import Base
from campaign_engine.db.session import get_session
from campaign_engine.models import Customer
from campaign_engine.observability.campaigns import get_campaign_store


@asynccontextmanager
async def _migrated_factory(database_url: str):
    engine = create_async_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    finally:
        await engine.dispose()


@pytest.fixture(autouse=True)
def reset_campaign_store():
    store = get_campaign_store()
    store.reset()
    yield store
    store.reset()


@pytest_asyncio.fixture
async def session_factory():
    async with _migrated_factory("sqlite+aiosqlite:///:memory:") as factory:
        yield factory


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File backed database so concurrent sessions use independent connections."""

    async with _migrated_factory(f"sqlite+aiosqlite:///{tmp_path / 'campaigns.db'}") as factory:
        yield factory


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def session_override():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = session_override
    yield app, session_factory
    app.dependency_overrides.clear()


def _build_customer(restaurant_id, **overrides) -> Customer:
    values = {
        "id": uuid4(),
        "restaurant_id": restaurant_id,
        "name": "Guest",
        "total_points": 0,
        "consent_push": True,
        "consent_whatsapp": False,
        "consent_email": True,
        "consent_sms": False,
        "created_at": datetime.now(timezone.utc),
    }
    values.update(overrides)
    return Customer(**values)


@pytest.fixture
def make_customer():
    return _build_customer
