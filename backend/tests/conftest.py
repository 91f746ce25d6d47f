"""Shared fixtures: an in-memory database, a fake benchmark engine and a clock."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401
from app.database import Base, get_db
from app.main import app
from app.models.client import Client
from app.models.credential import Credential
from app.routers.scans import get_scheduler
from app.services.benchmark_runner import BenchmarkTimeoutError


def control(
    control_id: str,
    alarm: int = 0,
    ok: int = 0,
    error: int = 0,
    reason: Optional[str] = None,
    results: Optional[list] = None,
    title: Optional[str] = None,
) -> dict[str, Any]:
    """Build one control entry as the benchmark engine reports it."""
    if results is None and reason is not None:
        results = [{"reason": reason, "resource": f"arn:aws:::{control_id}", "status": "alarm"}]
    return {
        "control_id": control_id,
        "title": title or f"Control {control_id}",
        "description": f"Checks {control_id}",
        "summary": {"alarm": alarm, "ok": ok, "error": error, "info": 0, "skip": 0},
        "results": results,
    }


def benchmark_output(*controls: dict[str, Any], groups: Optional[list] = None) -> dict[str, Any]:
    """Build a benchmark document with top-level controls and optional groups."""
    return {"group_id": "root", "controls": list(controls), "groups": groups or []}


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeRunner:
    """Benchmark engine stand-in returning canned documents per benchmark.

    A callable value is called with the credential to pick the document.
    A value that is an exception instance is raised instead of returned.
    ``on_run`` is called after every invocation, e.g. to advance a clock.
    """

    def __init__(self, outputs: Optional[dict[str, Any]] = None, on_run: Optional[Callable[[str], None]] = None):
        self.outputs = outputs or {}
        self.on_run = on_run
        self.calls: list[tuple[str, Optional[float]]] = []

    async def run(self, benchmark_name, credential=None, timeout_seconds=None):
        self.calls.append((benchmark_name, timeout_seconds))
        if self.on_run is not None:
            self.on_run(benchmark_name)
        if benchmark_name not in self.outputs:
            raise BenchmarkTimeoutError(benchmark_name, timeout_seconds or 0)
        value = self.outputs[benchmark_name]
        if callable(value):
            value = value(credential)
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_control():
    return control


@pytest.fixture
def make_benchmark_output():
    return benchmark_output


@pytest.fixture
def fake_runner_cls():
    return FakeRunner


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def tenant(db_session):
    """A client assigned HIPAA and SOC2 with one active AWS credential."""
    client = Client(
        id=uuid.uuid4(),
        company_name="Acme Health",
        assigned_frameworks=["HIPAA", "SOC2"],
    )
    db_session.add(client)
    db_session.add(
        Credential(
            id=uuid.uuid4(),
            client_id=client.id,
            provider="aws",
            credentials={"access_key_id": "AKIAEXAMPLE", "secret_access_key": "secret", "region": "us-east-1"},
            is_active=True,
            region="us-east-1",
        )
    )
    await db_session.commit()
    return client


@pytest.fixture
def mock_scheduler():
    """Scan scheduler stand-in; submitted scans are recorded, not run."""
    scheduler = MagicMock()
    scheduler.submit_scan = MagicMock(side_effect=lambda scan_id: f"scan:{scan_id}")
    return scheduler


@pytest_asyncio.fixture
async def api_client(session_factory, mock_scheduler):
    """HTTP client for the app, bound to the in-memory database."""
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_scheduler] = lambda: mock_scheduler
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.clear()
