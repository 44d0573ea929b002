"""
Pytest configuration and fixtures for backend testing
"""

import asyncio
import io
import os
import zipfile
from pathlib import Path

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
from sqlalchemy.pool import NullPool

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("SYNC_SINK_URL", None)

from app.main import app as real_app
from app.db.config import build_engine, get_session
from app.exceptions import SinkError
from app.models.persisted import Base
from app.repositories.package_repo import PackageRepository
from app.routers.sync import get_sync_scheduler
from app.services.sync_processor import SyncProcessor
from app.services.sync_scheduler import SyncScheduler
from app.services.sync_sink import ExternalSyncSink
from app.utils.settings import Settings, get_settings


# Database -------------------------------------------------------------------


@pytest.fixture
async def session_factory(tmp_path: Path):
    """Fresh SQLite file per test, schema created from the ORM models."""
    engine = build_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    yield factory
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def package_id(db) -> str:
    """A registered package without files on disk."""
    record = await PackageRepository(db).create(
        package_id="pkg-1",
        title="Safety Basics",
        file_path="/tmp/pkg-1",
        scorm_version="2004",
        launch_path="index.html",
    )
    return record.id


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        storage_dir=tmp_path / "storage",
        max_package_size=1024 * 1024,
        max_payload_bytes=64 * 1024,
        max_batch_actions=50,
        sync_batch_size=100,
        sync_max_retries=3,
        sync_interval_seconds=0.05,
    )


# Sinks ----------------------------------------------------------------------


class RecordingSink(ExternalSyncSink):
    """Accepts everything and remembers what it was sent."""

    def __init__(self):
        self.calls = []

    async def apply_initialize(self, session_id, package_id, payload):
        self.calls.append(("initialize", session_id, payload))

    async def apply_commit(self, session_id, package_id, payload):
        self.calls.append(("commit", session_id, payload))

    async def apply_terminate(self, session_id, package_id, payload):
        self.calls.append(("terminate", session_id, payload))


class SwitchableSink(RecordingSink):
    """Fails while ``available`` is False; counts every attempt."""

    def __init__(self, available: bool = False):
        super().__init__()
        self.available = available
        self.attempts = 0

    async def _check(self):
        self.attempts += 1
        if not self.available:
            raise SinkError("upstream offline", status_code=503)

    async def apply_initialize(self, session_id, package_id, payload):
        await self._check()
        await super().apply_initialize(session_id, package_id, payload)

    async def apply_commit(self, session_id, package_id, payload):
        await self._check()
        await super().apply_commit(session_id, package_id, payload)

    async def apply_terminate(self, session_id, package_id, payload):
        await self._check()
        await super().apply_terminate(session_id, package_id, payload)


class BlockingSink(RecordingSink):
    """Holds every call until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def apply_commit(self, session_id, package_id, payload):
        self.entered.set()
        await self.release.wait()
        await super().apply_commit(session_id, package_id, payload)


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def switchable_sink():
    return SwitchableSink(available=False)


# Application ----------------------------------------------------------------


def make_scheduler(session_factory, settings, sink=None) -> SyncScheduler:
    processor = SyncProcessor(
        session_factory,
        batch_size=settings.sync_batch_size,
        max_retries=settings.sync_max_retries,
        sink=sink,
        sink_timeout=1.0,
    )
    return SyncScheduler(processor, settings.sync_interval_seconds)


@pytest.fixture
def sink():
    """Override in a test module to run the app in forward mode."""
    return None


@pytest.fixture
async def scheduler(session_factory, settings, sink):
    scheduler = make_scheduler(session_factory, settings, sink)
    yield scheduler
    scheduler.stop()


@pytest.fixture
async def test_app(session_factory, settings, scheduler):
    async def override_session():
        async with session_factory() as session:  # type: ignore
            yield session

    real_app.dependency_overrides[get_session] = override_session
    real_app.dependency_overrides[get_sync_scheduler] = lambda: scheduler
    real_app.dependency_overrides[get_settings] = lambda: settings

    yield real_app

    real_app.dependency_overrides.clear()


@pytest.fixture
async def client(test_app):
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# Helper functions for tests
def assert_response_success(response, expected_status=200):
    """Assert that response is successful"""
    assert response.status_code == expected_status, f"Expected {expected_status}, got {response.status_code}: {response.text}"


def assert_response_error(response, expected_status=400):
    """Assert that response is an error in the standard envelope"""
    assert response.status_code == expected_status, f"Expected error {expected_status}, got {response.status_code}: {response.text}"
    body = response.json()
    if expected_status != 422:
        assert body["success"] is False
        assert body["error"]


def create_test_zip_bytes(extra=None, manifest: bool = True) -> bytes:
    """Build a minimal SCORM package in memory"""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        if manifest:
            zf.writestr("imsmanifest.xml", "<manifest></manifest>")
        zf.writestr("index.html", "<html><body>Test</body></html>")
        for name, content in (extra or {}).items():
            zf.writestr(name, content)
    return buffer.getvalue()
