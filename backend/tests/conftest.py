"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- In-memory async SQLite database (no external services needed)
- Session factory, ephemeral storage and capability registry
- A fully wired Runtime and a FastAPI test client (httpx.AsyncClient)
- Helpers to seed workflow documents
"""

import os
from typing import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-not-for-production")
os.environ.setdefault("QUEUE_BACKEND", "direct")
os.environ.setdefault("LOG_FORMAT", "text")

from app.config import Settings  # noqa: E402
from capabilities.registry import build_default_registry  # noqa: E402
from db.database import create_db_engine, create_session_factory, init_db  # noqa: E402
from services.storage_service import EphemeralStorage  # noqa: E402
from workflow.resilience import reset_resilience_layer  # noqa: E402

TEST_USER_ID = "user-1"
TEST_ORG_ID = "org-1"


def make_settings(**overrides) -> Settings:
    """Test settings: in-memory database, fast queue backoff."""
    values = {
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "ENVIRONMENT": "testing",
        "ENCRYPTION_KEY": "test-encryption-key-not-for-production",
        "QUEUE_BACKEND": "direct",
        "QUEUE_BACKOFF_BASE_SECONDS": 0.01,
        "LOG_FORMAT": "text",
    }
    values.update(overrides)
    return Settings(**values)


def workflow_document(name: str = "Test Workflow", trigger=None, steps=None, **config) -> dict:
    """A small valid workflow document: uppercase the trigger's text."""
    document = {
        "version": "1.0",
        "name": name,
        "description": "A workflow for testing",
        "trigger": trigger or {"type": "manual", "config": {}},
        "config": {
            "steps": steps or [
                {
                    "id": "shout",
                    "module": "utilities.string.toUpperCase",
                    "inputs": {"text": "{{trigger.text}}"},
                    "outputAs": "shouted",
                }
            ],
            "returnValue": "{{shouted}}",
        },
        "metadata": {"tags": ["test"]},
    }
    document["config"].update(config)
    return document


# ---------------------------------------------------------------------------
# Isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def fresh_resilience_layer():
    """Circuit and rate limit state must not leak between tests."""
    reset_resilience_layer()
    yield
    reset_resilience_layer()


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine():
    """A fresh in-memory database per test."""
    engine = create_db_engine("sqlite+aiosqlite:///:memory:")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def storage(session_factory) -> EphemeralStorage:
    return EphemeralStorage(session_factory)


@pytest.fixture
def registry():
    return build_default_registry()


# ---------------------------------------------------------------------------
# Runtime / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest_asyncio.fixture
async def runtime(settings, db_engine):
    """Fully wired runtime on the test database."""
    from app.container import build_runtime

    rt = build_runtime(settings, db_engine)
    await rt.start()
    yield rt
    await rt.triggers.stop()
    await rt.queue.close(grace=1)


@pytest_asyncio.fixture
async def app(runtime):
    """FastAPI app with the test runtime attached.

    ASGITransport does not run the lifespan, so the runtime is started
    by the fixture above instead.
    """
    from app.main import create_app

    test_app = create_app()
    test_app.state.runtime = runtime
    yield test_app


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac


@pytest.fixture
def user_headers() -> dict:
    return {"X-User-ID": TEST_USER_ID, "X-Organization-ID": TEST_ORG_ID}


# ---------------------------------------------------------------------------
# Test data fixtures
# ---------------------------------------------------------------------------

async def seed_workflow(runtime, document: dict, enabled: bool = True, workflow_id: str = None):
    """Import a document straight through the service and sync its triggers."""
    from services.workflow_service import WorkflowService

    async with runtime.session_factory() as session:
        service = WorkflowService(session, runtime.validator)
        workflow, _ = await service.import_document(
            document, TEST_USER_ID, organization_id=TEST_ORG_ID, workflow_id=workflow_id
        )
        if not enabled:
            workflow.is_enabled = False
        await session.commit()
    await runtime.triggers.sync(workflow.id)
    return workflow


@pytest_asyncio.fixture
async def test_workflow(runtime):
    """A manual-trigger workflow owned by the test user."""
    return await seed_workflow(runtime, workflow_document(), workflow_id=str(uuid4()))
