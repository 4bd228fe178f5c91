"""
Shared test fixtures for oracle tests.

All oracle env vars are cleaned before each test to ensure isolation, and the
working directory is moved to tmp_path so no .env file leaks into settings.
Provides a real SQLite store under tmp_path with the two reference sites
configured, record builders, a mocked Redis client, and an in-memory lease
backend that honours PX expiry.

CHANGELOG:
- 2026-10-19: Add ExpiringLeaseRedis and lease_backend (STORY-118)
- 2026-10-03: Add store and mock_redis fixtures (STORY-106)
- 2026-10-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from datetime import datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from iot_oracle.src.models import NormalizedRecord, RawReading, ReadingStatus, Site
from iot_oracle.src.normalizer import normalize
from iot_oracle.src.store import SqliteStore

# All OracleSettings environment variable names, used for cleanup.
_ALL_ORACLE_ENV_VARS = (
    "DATABASE_PATH",
    "REDIS_URL",
    "ANCHOR_ENABLED",
    "ADAPTER_API_URL",
    "ADAPTER_API_KEY",
    "ANCHOR_MAX_ATTEMPTS",
    "ANCHOR_BASE_DELAY_S",
    "ANCHOR_RETRY_CLIENT_ERRORS",
    "ANCHOR_TIMEOUT_S",
    "ANCHOR_DELAY_S",
    "HASH_PRECISION_POWER_DP",
    "HASH_PRECISION_ENERGY_DP",
    "HASH_PRECISION_TEMP_DP",
    "HASH_PRECISION_IRR_DP",
    "DEFAULT_BASELINE_FACTOR_KG_PER_KWH",
    "DAILY_RUN_HOUR_UTC",
    "DAILY_RUN_MINUTE_UTC",
    "SITES_FILE",
    "HEALTH_PATH",
    "LOCK_TTL_S",
    "LOCK_WAIT_S",
)

PRJ001 = Site(
    site_id="PRJ001",
    name="Solar Farm Alpha",
    country="India",
    timezone="Asia/Kolkata",
    baseline_kg_per_kwh=0.708,
)
PRJ002 = Site(
    site_id="PRJ002",
    name="Wind Farm Beta",
    country="Germany",
    timezone="Europe/Berlin",
    baseline_kg_per_kwh=0.485,
)


@pytest.fixture(autouse=True)
def _clean_oracle_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all oracle env vars and isolate from .env files before each test."""
    for var in _ALL_ORACLE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


def make_record(
    ts: str,
    site_id: str = "PRJ001",
    energy: float | None = 1.5,
    power: float | None = 50.0,
    irr: float | None = 800.0,
    temp: float | None = 25.0,
    status: ReadingStatus | None = ReadingStatus.OK,
) -> NormalizedRecord:
    """Normalize a reading with the default precision."""
    return normalize(
        RawReading(
            site_id=site_id,
            ts_utc=ts,
            ac_energy_kwh=energy,
            ac_power_kw=power,
            poa_irr_wm2=irr,
            temp_c=temp,
            status=status,
        )
    )


def prj001_day_records() -> list[NormalizedRecord]:
    """Four 1.5 kWh readings on 2024-01-15 for PRJ001 (6.00 kWh total)."""
    return [
        make_record("2024-01-15T10:00:00Z", power=45.2, irr=780.5, temp=24.1),
        make_record("2024-01-15T11:00:00Z", power=50.0, irr=820.0, temp=25.3),
        make_record("2024-01-15T12:00:00Z", power=55.5, irr=850.2, temp=26.0),
        make_record("2024-01-15T13:00:00Z", power=48.3, irr=790.7, temp=25.7),
    ]


@pytest_asyncio.fixture()
async def store(tmp_path: Path) -> AsyncIterator[SqliteStore]:
    """Open a SqliteStore under tmp_path with PRJ001 and PRJ002 configured."""
    async with SqliteStore(tmp_path / "oracle.db") as db:
        await db.upsert_site(PRJ001)
        await db.upsert_site(PRJ002)
        yield db


@pytest_asyncio.fixture()
async def seeded_store(store: SqliteStore) -> SqliteStore:
    """The store fixture plus PRJ001's four records on 2024-01-15."""
    for record in prj001_day_records():
        await store.upsert_record(record)
    return store


@pytest.fixture()
def mock_redis() -> AsyncMock:
    """Create a mock async Redis client.

    Returns:
        AsyncMock: A mock that behaves like a redis.asyncio.Redis client.
    """
    client = AsyncMock()
    client.set = AsyncMock(return_value=True)
    client.eval = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    return client


def utc(text: str) -> datetime:
    """Parse an ISO instant ending in Z."""
    return datetime.fromisoformat(text.replace("Z", "+00:00"))


class ExpiringLeaseRedis:
    """In-memory stand-in for the Redis lease commands, with real PX expiry.

    Supports ``set(name, value, nx=, px=)`` and the compare-and-delete and
    compare-and-PEXPIRE scripts evaluated by KeyedLocks. Several KeyedLocks
    sharing one instance behave like worker processes sharing one Redis.
    """

    def __init__(self) -> None:
        self._leases: dict[str, tuple[str, float]] = {}

    def _live(self, name: str) -> tuple[str, float] | None:
        entry = self._leases.get(name)
        if entry is not None and entry[1] <= time.monotonic():
            del self._leases[name]
            return None
        return entry

    async def set(
        self, name: str, value: str, nx: bool = False, px: int | None = None
    ) -> bool | None:
        if nx and self._live(name) is not None:
            return None
        expires_at = time.monotonic() + px / 1000 if px else float("inf")
        self._leases[name] = (value, expires_at)
        return True

    async def eval(self, script: str, numkeys: int, name: str, token: str, *args: Any) -> int:
        entry = self._live(name)
        if entry is None or entry[0] != token:
            return 0
        if "pexpire" in script:
            self._leases[name] = (token, time.monotonic() + int(args[0]) / 1000)
        else:
            del self._leases[name]
        return 1

    async def aclose(self) -> None:
        self._leases.clear()


@pytest.fixture()
def lease_backend() -> ExpiringLeaseRedis:
    """A lease backend shared by several KeyedLocks in one test."""
    return ExpiringLeaseRedis()
