"""Shared test fixtures."""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import fleetline.accounts.models  # noqa: F401
import fleetline.database as db_module
import fleetline.incidents.models  # noqa: F401
import fleetline.inventory.models  # noqa: F401
from fleetline.config import Settings
from fleetline.database import get_session
from fleetline.main import app
from fleetline.poller.orchestrator import Orchestrator
from fleetline.registry.models import Device
from fleetline.registry.store import register_device
from fleetline.transport.mock import MockTransport


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created.

    StaticPool ensures every session uses the same connection,
    so the in-memory database is shared across the test.
    """
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(eng)
    return eng


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as s:
        yield s


@pytest.fixture
def device(session) -> Device:
    return register_device(
        session,
        tenant_id="t1",
        name="R1",
        host="10.0.0.1",
        username="api",
        password="secret",
        watch_interfaces=["ether1"],
    )


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        transport="mock",
        device_timeout=0.5,
        max_workers=4,
        poll_interval=3600,
    )


@pytest.fixture
def transport() -> MockTransport:
    return MockTransport()


@pytest.fixture
def orchestrator(engine, transport, test_settings) -> Orchestrator:
    return Orchestrator(engine, transport, test_settings)


@pytest.fixture
def client(engine, orchestrator, monkeypatch) -> Generator[TestClient, None, None]:
    """FastAPI TestClient with overridden DB engine, session and scheduler."""
    monkeypatch.setenv("FLEETLINE_SCHEDULER_ENABLED", "false")
    # Patch the module-level engine so lifespan's init_db() uses the test engine.
    original_engine = db_module.engine
    db_module.engine = engine

    def _override_session() -> Generator[Session, None, None]:
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = _override_session
    with TestClient(app) as c:
        # Swap in a scheduler wired to the mock transport for manual triggers
        app.state.orchestrator = orchestrator
        yield c
    app.dependency_overrides.clear()
    db_module.engine = original_engine
