"""Async test fixtures for journey engine tests using SQLite."""

from __future__ import annotations

import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from journeys.app import build_machine
from journeys.config import JourneySettings
from journeys.database import get_db
from journeys.errors import MessageDeliveryError
from journeys.models import Base, Contact, ContactTag
from journeys.services import journey_svc


class FakeSender:
    """Records outbound messages; ``failures`` are raised in order before succeeding."""

    def __init__(self):
        self.sent = []
        self.failures: list[Exception] = []

    async def send(self, tenant_id, message):
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append((tenant_id, message))
        return f"msg-{len(self.sent)}"

    def fail_times(self, count: int, exc: Exception | None = None) -> None:
        self.failures = [exc or MessageDeliveryError("provider unavailable") for _ in range(count)]


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def test_settings() -> JourneySettings:
    return JourneySettings(
        _env_file=None,
        dispatch_worker_enabled=False,
        step_max_attempts=3,
        retry_backoff_base_seconds=60,
        retry_backoff_max_seconds=3600,
        max_steps_per_tick=25,
        dispatch_rollback_delay_seconds=30,
        dispatch_rollback_jitter_seconds=0,
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    # File-backed so every session gets its own connection, as in production.
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'journeys.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def machine(session_factory, sender, test_settings):
    return build_machine(session_factory, sender=sender, settings_obj=test_settings)


@pytest_asyncio.fixture
async def contact(db: AsyncSession, tenant_id) -> Contact:
    c = Contact(
        tenant_id=tenant_id,
        first_name="Ada",
        last_name="Lovelace",
        email="ada@example.com",
        phone="+15551234567",
        custom_fields={"plan": "pro", "score": 42},
    )
    c.tags = [ContactTag(name="lead")]
    db.add(c)
    await db.commit()
    await db.refresh(c)
    return c


@pytest.fixture
def make_journey(db: AsyncSession, tenant_id):
    """Create and publish a journey from a list of step dicts."""

    async def _make(steps: list[dict], name: str = "Nurture", allow_reentry: bool = False, publish: bool = True):
        journey = await journey_svc.create_journey(
            db,
            tenant_id,
            name=name,
            steps=steps,
            settings={"allow_reentry": allow_reentry},
        )
        if publish:
            journey = await journey_svc.publish(db, tenant_id, journey.id)
        return journey

    return _make


@pytest_asyncio.fixture
async def client(engine, session_factory, machine):
    """HTTPX async test client against the journeys app."""
    from journeys.app import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    original_machine = app.state.machine
    app.state.machine = machine
    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
    app.state.machine = original_machine
