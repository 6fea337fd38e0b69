from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any tenantflow module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="tenantflow-tests-")
os.environ["DATABASE_URL"] = os.environ.get(
    "TENANTFLOW_TEST_DATABASE_URL", f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'tenantflow.db')}"
)
os.environ.setdefault("EVENT_BUS_BACKEND", "log")

import pytest  # noqa: E402

from tenantflow.core.config import get_settings  # noqa: E402
from tenantflow.persistence.db import SessionLocal, create_schema, drop_schema, engine  # noqa: E402
from tenantflow.services.approver_resolver import ApproverResolver  # noqa: E402
from tenantflow.services.directory import StaticDirectory  # noqa: E402
from tenantflow.services.event_bus import InMemoryEventBus  # noqa: E402
from tenantflow.services.orchestrator import WorkflowOrchestrator  # noqa: E402


@pytest.fixture(autouse=True)
async def fresh_schema():
    # Every test starts from empty tables; disposing keeps pooled connections off closed loops.
    get_settings.cache_clear()
    await drop_schema()
    await create_schema()
    yield
    await engine.dispose()
    get_settings.cache_clear()


@pytest.fixture
async def session():
    async with SessionLocal() as db_session:
        yield db_session


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def directory() -> StaticDirectory:
    return StaticDirectory()


@pytest.fixture
def orchestrator(event_bus: InMemoryEventBus, directory: StaticDirectory) -> WorkflowOrchestrator:
    return WorkflowOrchestrator(event_bus=event_bus, resolver=ApproverResolver(directory))
