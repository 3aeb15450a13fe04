"""Shared pytest fixtures for the workflow scheduler test suite.

Provides:
- A file-backed async SQLite database per test (separate connections see
  each other's commits, so claim races are real)
- Scheduler services wired to a fake execution engine and a fake clock
- FastAPI test client (httpx.AsyncClient)
- Pre-seeded test data (organizations, workflows)
- Auth helpers (JWT tokens with permission claims)
"""

import asyncio
import os
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production-0123456789")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("SCHEDULER_DISPATCH_ENABLED", "false")

from app.config import get_settings  # noqa: E402
from core.exceptions import ExecutionDispatchError  # noqa: E402
from core.security import create_access_token  # noqa: E402
from db.base import Base  # noqa: E402
from db.database import create_db_engine, create_session_factory  # noqa: E402
from scheduler.engine import SchedulerEngine  # noqa: E402
from scheduler.executor import TriggerEvent  # noqa: E402
from services.execution_service import ExecutionService  # noqa: E402
from services.schedule_store import ScheduleStore  # noqa: E402
from services.workflow_service import WorkflowService  # noqa: E402

START = datetime(2024, 1, 1, 0, 0, 0)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


class FakeExecutor:
    """In-memory execution engine.

    Records every accepted call, honours dispatch keys like the real
    adapter, and can be told to fail or stall. ``hook`` runs while a
    dispatch is in flight.
    """

    def __init__(self, hook=None):
        self.hook = hook
        self.calls: list[tuple[str, TriggerEvent, Optional[str]]] = []
        self.by_key: dict[str, str] = {}
        self.fail_with: Optional[Exception] = None
        self.delay: float = 0.0

    async def execute_workflow(
        self,
        workflow_id: str,
        event: TriggerEvent,
        dispatch_key: Optional[str] = None,
    ) -> str:
        if self.hook is not None:
            await self.hook(event)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        if dispatch_key and dispatch_key in self.by_key:
            return self.by_key[dispatch_key]
        execution_id = f"exec-{len(self.calls) + 1}"
        self.calls.append((workflow_id, event, dispatch_key))
        if dispatch_key:
            self.by_key[dispatch_key] = execution_id
        return execution_id

    async def wait_in_flight(self) -> None:
        return None

    def fail(self, message: str = "engine unavailable") -> None:
        self.fail_with = ExecutionDispatchError(message)

    def recover(self) -> None:
        self.fail_with = None


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create a fresh database file for one test."""
    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}")
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


# ---------------------------------------------------------------------------
# Scheduler fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def make_executor():
    """Factory for extra fake engines (one per simulated dispatcher)."""
    return FakeExecutor


@pytest.fixture
def store(session_factory) -> ScheduleStore:
    return ScheduleStore(session_factory)


@pytest.fixture
def executions(session_factory) -> ExecutionService:
    return ExecutionService(session_factory)


@pytest.fixture
def workflows(session_factory) -> WorkflowService:
    return WorkflowService(session_factory)


@pytest.fixture
def engine(store, executor, workflows, clock) -> SchedulerEngine:
    return SchedulerEngine(
        store,
        executor,
        workflows=workflows,
        clock=clock,
        dispatch_timeout=1.0,
        claim_ttl=timedelta(minutes=5),
    )


# ---------------------------------------------------------------------------
# Test data fixtures
# ---------------------------------------------------------------------------

async def _add(session_factory, instance):
    async with session_factory() as session:
        async with session.begin():
            session.add(instance)
    return instance


@pytest_asyncio.fixture
async def make_org(session_factory):
    """Factory creating organizations."""
    from db.models.organization import Organization

    async def _make(name: str = "Test Organization"):
        suffix = uuid4().hex[:8]
        return await _add(
            session_factory,
            Organization(id=str(uuid4()), name=f"{name} {suffix}", slug=f"test-org-{suffix}"),
        )

    return _make


@pytest_asyncio.fixture
async def make_workflow(session_factory):
    """Factory creating workflows inside an organization."""
    from db.models.workflow import Workflow

    async def _make(org, name: str = "Test Workflow", is_enabled: bool = True):
        return await _add(
            session_factory,
            Workflow(id=str(uuid4()), organization_id=org.id, name=name, is_enabled=is_enabled),
        )

    return _make


@pytest_asyncio.fixture
async def test_org(make_org):
    """Create a test organization."""
    return await make_org()


@pytest_asyncio.fixture
async def test_workflow(make_workflow, test_org):
    """Create a test workflow."""
    return await make_workflow(test_org)


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def container(session_factory, executor, clock):
    from app.dependencies import build_container

    return build_container(session_factory, settings=get_settings(), executor=executor, clock=clock)


@pytest.fixture
def app(container):
    """Create a FastAPI app instance wired to the test services."""
    from app.main import create_app

    return create_app(container=container)


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def make_auth_headers(org_id: str, permissions: Optional[list[str]] = None, user_id: str = "user-1") -> dict:
    """Authorization headers for a user of ``org_id``."""
    token = create_access_token(
        user_id=user_id,
        email=f"{user_id}@example.com",
        org_id=org_id,
        permissions=["schedules.*"] if permissions is None else permissions,
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(test_org) -> dict:
    """Generate Authorization headers with a valid JWT token."""
    return make_auth_headers(test_org.id)


@pytest.fixture
def headers_for():
    """Factory: ``headers_for(org_id, permissions=None)``."""
    return make_auth_headers
