import os
from typing import AsyncGenerator

# Settings and the module-level engine are built on import; point them at
# SQLite before anything from libs/ is imported.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["ENVIRONMENT"] = "test"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from libs.common.config import get_settings
from libs.db.base import Base
from services.fulfillment_service import models as _fulfillment_models  # noqa: F401
from services.fulfillment_service.context import FulfillmentContext
from tests.doubles import FakeGateway, FrozenClock

# Clear cached settings to reload with new env vars
get_settings.cache_clear()
settings = get_settings()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """
    File-backed SQLite engine per test so separate sessions share data.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Fulfillment context
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def ctx(db_session, gateway, clock) -> FulfillmentContext:
    return FulfillmentContext(
        db=db_session, gateway=gateway, settings=settings, clock=clock
    )


@pytest.fixture
def production_settings():
    return settings.model_copy(update={"ENVIRONMENT": "production"})


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(db_session, gateway, clock) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient bound to the fulfillment app with DB, gateway and
    clock overridden. Use the ``act_as`` fixture to pick the caller.
    """
    from libs.db.session import get_async_db
    from services.fulfillment_service.app.main import app
    from services.fulfillment_service.context import get_clock
    from services.fulfillment_service.stripe_client import get_payout_gateway

    async def _db():
        yield db_session

    app.dependency_overrides[get_async_db] = _db
    app.dependency_overrides[get_payout_gateway] = lambda: gateway
    app.dependency_overrides[get_clock] = lambda: clock

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def act_as():
    """Return a function that makes subsequent requests run as ``user_id``."""
    from libs.auth.dependencies import get_current_user
    from libs.auth.models import AuthUser
    from services.fulfillment_service.app.main import app

    def _act_as(user_id: str) -> AuthUser:
        user = AuthUser(user_id=user_id, email=f"{user_id}@example.com")
        app.dependency_overrides[get_current_user] = lambda: user
        return user

    return _act_as

