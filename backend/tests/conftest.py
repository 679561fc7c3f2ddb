"""Shared pytest fixtures for the automation engine test suite.

Provides:
- In-memory async SQLite database shared by every session of a test
- Session factory wired the same way as production
- Pre-seeded organization and workflow builders
- A WorkflowExecutor whose retry sleeps return immediately
"""

import os
from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-not-for-production")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("DEFAULT_RETRY_DELAY_SECONDS", "0")

from db.base import Base  # noqa: E402
from db.database import create_session_factory  # noqa: E402


async def no_sleep(seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test; StaticPool keeps one connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Test data fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def test_org(session_factory):
    """Create a test organization."""
    from db.models.organization import Organization

    suffix = uuid4().hex[:8]
    org = Organization(name=f"Test Organization {suffix}", slug=f"test-org-{suffix}")
    async with session_factory() as session:
        session.add(org)
        await session.commit()
    return org


@pytest_asyncio.fixture
async def other_org(session_factory):
    """A second organization for tenant-isolation tests."""
    from db.models.organization import Organization

    suffix = uuid4().hex[:8]
    org = Organization(name=f"Other Organization {suffix}", slug=f"other-org-{suffix}")
    async with session_factory() as session:
        session.add(org)
        await session.commit()
    return org


@pytest.fixture
def make_workflow(session_factory, test_org):
    """Factory: persist a workflow with the given steps."""
    from db.models.workflow import Workflow

    async def _make(steps, **overrides):
        data = {
            "organization_id": test_org.id,
            "name": "Test Workflow",
            "steps": steps,
            "retry_config": {"max_retries": 3, "retry_delay_seconds": 0},
            "assigned_user_id": "user-1",
            "assigned_user_name": "Ops Agent",
        }
        data.update(overrides)
        workflow = Workflow(**data)
        async with session_factory() as session:
            session.add(workflow)
            await session.commit()
        return workflow

    return _make


@pytest.fixture
def add_rows(session_factory):
    """Factory: persist model instances in one transaction."""

    async def _add(*instances):
        async with session_factory() as session:
            session.add_all(instances)
            await session.commit()
        return instances

    return _add


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def notifications():
    from notifications.manager import NotificationManager

    return NotificationManager()


@pytest.fixture
def executor(session_factory, notifications):
    from app.config import get_settings
    from integrations.dispatcher import ActionDispatcher
    from workflow.engine import WorkflowExecutor

    settings = get_settings()
    return WorkflowExecutor(
        session_factory=session_factory,
        settings=settings,
        notifications=notifications,
        dispatcher=ActionDispatcher(session_factory, settings),
        sleep=no_sleep,
    )


@pytest.fixture
def step_services(executor):
    """StepServices bound to the executor (nested steps resolve through it)."""
    return executor.step_executor.services


@pytest.fixture
def context(test_org):
    from workflow.context import ExecutionContext

    return ExecutionContext(
        organization_id=test_org.id,
        workflow_id="wf-1",
        workflow_name="Nightly Sync",
        run_id="run-1",
        assigned_user_id="user-1",
        assigned_user_name="Ops Agent",
    )
