"""
Test Configuration — Fixtures for async DB, fake telemetry client and raw events.

Each test gets its own SQLite file so sync cycles can commit and roll
back freely. SQLite needs explicit BEGIN handling for SAVEPOINTs to work
under the "skip" failure policy.
"""

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from db import models  # noqa: F401  (registers tables on Base.metadata)
from db.session import Base

ACCOUNT_ID = "acme-gaming"


def _enable_sqlite_savepoints(engine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture
async def test_engine(tmp_path):
    """Fresh database per test with all tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fleetwatch.db'}", echo=False)
    _enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


class FakeTelemetryClient:
    """In-memory stand-in for TelemetryClient that records its calls."""

    def __init__(self, events=None, devices=None, error=None):
        self.events = list(events or [])
        self.devices = list(devices or [])
        self.error = error
        self.calls = []

    async def get_devices(self, account_id=None, row_limit=None):
        self.calls.append({"endpoint": "devices", "account_id": account_id, "row_limit": row_limit})
        return list(self.devices)

    async def get_events(self, account_id=None, start_time=None, end_time=None):
        self.calls.append(
            {"endpoint": "events", "account_id": account_id, "start_time": start_time, "end_time": end_time}
        )
        if self.error is not None:
            raise self.error
        return list(self.events)


@pytest.fixture
def telemetry_client():
    return FakeTelemetryClient()


@pytest.fixture
def make_event():
    """Build a raw telemetry event with sensible defaults."""

    def _make(row_id, entry, **overrides):
        raw = {
            "row_id": row_id,
            "serial": "SN-1001",
            "imei": "356938035643809",
            "accountid": ACCOUNT_ID,
            "eventtype": "Door",
            "eventid": entry,
            "entry": entry,
            "eventtimestamp": "2025-01-15 14:23:45",
            "reporttime": "2025-01-15T14:24:02Z",
        }
        raw.update(overrides)
        return raw

    return _make
