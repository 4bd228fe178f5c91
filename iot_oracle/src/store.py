"""
Telemetry store: repository protocol plus an async SQLite implementation.

Components never talk to a global client; they receive a TelemetryStore.
SqliteStore keeps normalized records, hourly summaries, daily digests and the
site registry in one SQLite database file in WAL mode.

Key rules:
- Records are upserted by (site_id, ts_utc); a repeat write overwrites
  (last write wins).
- Summaries and digests are upserted by (site_id, hour) / (site_id, day).
- A digest upsert never touches the anchor columns, and the anchor flag only
  moves 0 -> 1 through mark_anchored(), a conditional update.
- Instants are stored as ``YYYY-MM-DDTHH:MM:SS.sssZ`` text, which sorts in
  time order, so range scans are plain string comparisons.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-19: Roll back failed writes and partial purges (STORY-120)
- 2026-10-06: Add purge_day and last_anchored_digest (STORY-114)
- 2026-10-04: Add conditional mark_anchored (STORY-107)
- 2026-10-02: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from pathlib import Path
from typing import Protocol

import aiosqlite

from iot_oracle.src.hashing import format_instant
from iot_oracle.src.models import DailyDigest, HourlySummary, NormalizedRecord, Site

_NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

_CREATE_SCHEMA_SQL = f"""\
CREATE TABLE IF NOT EXISTS sites (
    site_id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    country TEXT NOT NULL DEFAULT '',
    timezone TEXT NOT NULL DEFAULT 'UTC',
    baseline_kg_per_kwh REAL NOT NULL,
    updated_at TEXT NOT NULL DEFAULT ({_NOW_SQL})
);

CREATE TABLE IF NOT EXISTS records (
    site_id TEXT NOT NULL,
    ts_utc TEXT NOT NULL,
    poa_irr_wm2 REAL,
    temp_c REAL,
    wind_mps REAL,
    ac_power_kw REAL,
    ac_energy_kwh REAL,
    status TEXT,
    source TEXT NOT NULL,
    uniq_key TEXT,
    row_hash TEXT NOT NULL,
    ingested_at TEXT NOT NULL DEFAULT ({_NOW_SQL}),
    PRIMARY KEY (site_id, ts_utc)
);

CREATE TABLE IF NOT EXISTS hourly_summaries (
    site_id TEXT NOT NULL,
    hour_utc TEXT NOT NULL,
    energy_kwh REAL NOT NULL,
    max_power_kw REAL,
    avg_temp_c REAL,
    avg_irr_wm2 REAL,
    row_count INTEGER NOT NULL,
    updated_at TEXT NOT NULL DEFAULT ({_NOW_SQL}),
    PRIMARY KEY (site_id, hour_utc)
);

CREATE TABLE IF NOT EXISTS daily_digests (
    site_id TEXT NOT NULL,
    day TEXT NOT NULL,
    energy_kwh REAL NOT NULL,
    avoided_tco2e REAL NOT NULL,
    row_count INTEGER NOT NULL,
    merkle_root TEXT NOT NULL,
    anchored INTEGER NOT NULL DEFAULT 0,
    adapter_tx_id TEXT,
    chain_tx_hash TEXT,
    artifact_uri TEXT,
    created_at TEXT NOT NULL DEFAULT ({_NOW_SQL}),
    updated_at TEXT NOT NULL DEFAULT ({_NOW_SQL}),
    PRIMARY KEY (site_id, day)
);
"""

_UPSERT_SITE_SQL = f"""\
INSERT INTO sites (site_id, name, country, timezone, baseline_kg_per_kwh)
VALUES (:site_id, :name, :country, :timezone, :baseline_kg_per_kwh)
ON CONFLICT (site_id) DO UPDATE SET
    name = excluded.name,
    country = excluded.country,
    timezone = excluded.timezone,
    baseline_kg_per_kwh = excluded.baseline_kg_per_kwh,
    updated_at = {_NOW_SQL};
"""

_UPSERT_RECORD_SQL = f"""\
INSERT INTO records (
    site_id, ts_utc, poa_irr_wm2, temp_c, wind_mps, ac_power_kw,
    ac_energy_kwh, status, source, uniq_key, row_hash
) VALUES (
    :site_id, :ts_utc, :poa_irr_wm2, :temp_c, :wind_mps, :ac_power_kw,
    :ac_energy_kwh, :status, :source, :uniq_key, :row_hash
)
ON CONFLICT (site_id, ts_utc) DO UPDATE SET
    poa_irr_wm2 = excluded.poa_irr_wm2,
    temp_c = excluded.temp_c,
    wind_mps = excluded.wind_mps,
    ac_power_kw = excluded.ac_power_kw,
    ac_energy_kwh = excluded.ac_energy_kwh,
    status = excluded.status,
    source = excluded.source,
    uniq_key = excluded.uniq_key,
    row_hash = excluded.row_hash,
    ingested_at = {_NOW_SQL};
"""

_UPSERT_HOURLY_SQL = f"""\
INSERT INTO hourly_summaries (
    site_id, hour_utc, energy_kwh, max_power_kw, avg_temp_c, avg_irr_wm2, row_count
) VALUES (
    :site_id, :hour_utc, :energy_kwh, :max_power_kw, :avg_temp_c, :avg_irr_wm2, :row_count
)
ON CONFLICT (site_id, hour_utc) DO UPDATE SET
    energy_kwh = excluded.energy_kwh,
    max_power_kw = excluded.max_power_kw,
    avg_temp_c = excluded.avg_temp_c,
    avg_irr_wm2 = excluded.avg_irr_wm2,
    row_count = excluded.row_count,
    updated_at = {_NOW_SQL};
"""

# Anchor columns are deliberately absent from the UPDATE clause.
_UPSERT_DIGEST_SQL = f"""\
INSERT INTO daily_digests (
    site_id, day, energy_kwh, avoided_tco2e, row_count, merkle_root, artifact_uri
) VALUES (
    :site_id, :day, :energy_kwh, :avoided_tco2e, :row_count, :merkle_root, :artifact_uri
)
ON CONFLICT (site_id, day) DO UPDATE SET
    energy_kwh = excluded.energy_kwh,
    avoided_tco2e = excluded.avoided_tco2e,
    row_count = excluded.row_count,
    merkle_root = excluded.merkle_root,
    artifact_uri = COALESCE(excluded.artifact_uri, daily_digests.artifact_uri),
    updated_at = {_NOW_SQL};
"""

_MARK_ANCHORED_SQL = f"""\
UPDATE daily_digests
SET anchored = 1, adapter_tx_id = ?, chain_tx_hash = ?, updated_at = {_NOW_SQL}
WHERE site_id = ? AND day = ? AND anchored = 0;
"""

_SELECT_RECORD_SQL = "SELECT * FROM records WHERE site_id = ? AND ts_utc = ?;"

_SELECT_RECORDS_RANGE_SQL = """\
SELECT * FROM records
WHERE site_id = ? AND ts_utc >= ? AND ts_utc < ?
ORDER BY ts_utc ASC;
"""

_SELECT_HOURLY_SQL = "SELECT * FROM hourly_summaries WHERE site_id = ? AND hour_utc = ?;"
_SELECT_DIGEST_SQL = "SELECT * FROM daily_digests WHERE site_id = ? AND day = ?;"

_SELECT_LAST_ANCHORED_SQL = """\
SELECT * FROM daily_digests
WHERE site_id = ? AND anchored = 1
ORDER BY day DESC
LIMIT 1;
"""

_SELECT_SITE_SQL = "SELECT * FROM sites WHERE site_id = ?;"
_SELECT_SITES_SQL = "SELECT * FROM sites ORDER BY site_id ASC;"

_DELETE_RECORDS_RANGE_SQL = "DELETE FROM records WHERE site_id = ? AND ts_utc >= ? AND ts_utc < ?;"
_DELETE_HOURLY_RANGE_SQL = (
    "DELETE FROM hourly_summaries WHERE site_id = ? AND hour_utc >= ? AND hour_utc < ?;"
)
_DELETE_UNANCHORED_DIGEST_SQL = (
    "DELETE FROM daily_digests WHERE site_id = ? AND day = ? AND anchored = 0;"
)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """Return the half-open UTC window ``[day 00:00, next day 00:00)``."""
    start = datetime.combine(day, time.min, tzinfo=UTC)
    return start, start + timedelta(days=1)


@dataclass(frozen=True)
class PurgeSummary:
    """What a purge_day() call removed.

    Attributes:
        records: Number of normalized records deleted.
        hourly: Number of hourly summaries deleted.
        digest_deleted: Whether the (unanchored) digest was deleted.
        digest_retained: Whether an anchored digest was kept.
    """

    records: int
    hourly: int
    digest_deleted: bool
    digest_retained: bool


class TelemetryStore(Protocol):
    """Repository interface consumed by the pipeline components."""

    async def upsert_record(self, record: NormalizedRecord) -> None: ...

    async def get_record(self, site_id: str, ts_utc: datetime) -> NormalizedRecord | None: ...

    async def records_between(
        self, site_id: str, start: datetime, end: datetime
    ) -> list[NormalizedRecord]: ...

    async def upsert_hourly(self, summary: HourlySummary) -> None: ...

    async def get_hourly(self, site_id: str, hour_utc: datetime) -> HourlySummary | None: ...

    async def upsert_digest(self, digest: DailyDigest) -> DailyDigest: ...

    async def get_digest(self, site_id: str, day: date) -> DailyDigest | None: ...

    async def last_anchored_digest(self, site_id: str) -> DailyDigest | None: ...

    async def mark_anchored(
        self, site_id: str, day: date, adapter_tx_id: str, chain_tx_hash: str
    ) -> bool: ...

    async def upsert_site(self, site: Site) -> None: ...

    async def get_site(self, site_id: str) -> Site | None: ...

    async def list_sites(self) -> list[Site]: ...

    async def purge_day(self, site_id: str, day: date) -> PurgeSummary: ...


class SqliteStore:
    """Async SQLite implementation of :class:`TelemetryStore`.

    Uses WAL journal mode so readers (CLI validation, proof lookups) do not
    block the daemon's writers. Each write runs under a connection-level
    asyncio lock so its statements and commit are not interleaved with
    another coroutine's; a failing write is rolled back before the error
    propagates.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.

    Usage::

        async with SqliteStore(path="/data/oracle.db") as store:
            await store.upsert_record(record)
            digest = await store.get_digest("PRJ001", date(2024, 1, 15))
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.executescript(_CREATE_SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteStore:
        """Enter async context manager: open the database."""
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager: close the database."""
        await self.close()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _conn(self) -> aiosqlite.Connection:
        assert self._db is not None, "Store not opened. Call open() or use async with."
        return self._db

    @contextlib.asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Commit on success; roll back every statement of the block on error."""
        db = self._conn()
        async with self._write_lock:
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    async def _write(self, sql: str, params: dict | tuple) -> int:
        async with self._transaction() as db:
            cursor = await db.execute(sql, params)
        return cursor.rowcount

    async def _fetch_one(self, sql: str, params: tuple) -> dict | None:
        cursor = await self._conn().execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def _fetch_all(self, sql: str, params: tuple) -> list[dict]:
        cursor = await self._conn().execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def upsert_record(self, record: NormalizedRecord) -> None:
        """Insert or overwrite the record keyed by (site_id, ts_utc)."""
        params = record.model_dump(mode="json")
        params["ts_utc"] = format_instant(record.ts_utc)
        await self._write(_UPSERT_RECORD_SQL, params)

    async def get_record(self, site_id: str, ts_utc: datetime) -> NormalizedRecord | None:
        """Return the record at exactly *ts_utc*, or None."""
        row = await self._fetch_one(_SELECT_RECORD_SQL, (site_id, format_instant(ts_utc)))
        return NormalizedRecord.model_validate(row) if row is not None else None

    async def records_between(
        self, site_id: str, start: datetime, end: datetime
    ) -> list[NormalizedRecord]:
        """Return records with ``start <= ts_utc < end`` ordered by instant."""
        rows = await self._fetch_all(
            _SELECT_RECORDS_RANGE_SQL,
            (site_id, format_instant(start), format_instant(end)),
        )
        return [NormalizedRecord.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Hourly summaries
    # ------------------------------------------------------------------

    async def upsert_hourly(self, summary: HourlySummary) -> None:
        """Insert or overwrite the summary keyed by (site_id, hour_utc)."""
        params = summary.model_dump(mode="json")
        params["hour_utc"] = format_instant(summary.hour_utc)
        await self._write(_UPSERT_HOURLY_SQL, params)

    async def get_hourly(self, site_id: str, hour_utc: datetime) -> HourlySummary | None:
        """Return the summary for the hour starting at *hour_utc*, or None."""
        row = await self._fetch_one(_SELECT_HOURLY_SQL, (site_id, format_instant(hour_utc)))
        return HourlySummary.model_validate(row) if row is not None else None

    # ------------------------------------------------------------------
    # Daily digests
    # ------------------------------------------------------------------

    async def upsert_digest(self, digest: DailyDigest) -> DailyDigest:
        """Insert or refresh the digest keyed by (site_id, day).

        Anchor state already stored for the key is preserved.

        Returns:
            The digest as stored after the write.
        """
        params = digest.model_dump(
            mode="json",
            include={
                "site_id",
                "day",
                "energy_kwh",
                "avoided_tco2e",
                "row_count",
                "merkle_root",
                "artifact_uri",
            },
        )
        await self._write(_UPSERT_DIGEST_SQL, params)
        stored = await self.get_digest(digest.site_id, digest.day)
        assert stored is not None
        return stored

    async def get_digest(self, site_id: str, day: date) -> DailyDigest | None:
        """Return the digest for (site_id, day), or None."""
        row = await self._fetch_one(_SELECT_DIGEST_SQL, (site_id, day.isoformat()))
        return DailyDigest.model_validate(row) if row is not None else None

    async def last_anchored_digest(self, site_id: str) -> DailyDigest | None:
        """Return the most recent anchored digest of a site, or None."""
        row = await self._fetch_one(_SELECT_LAST_ANCHORED_SQL, (site_id,))
        return DailyDigest.model_validate(row) if row is not None else None

    async def mark_anchored(
        self, site_id: str, day: date, adapter_tx_id: str, chain_tx_hash: str
    ) -> bool:
        """Flip the anchor flag 0 -> 1 and record the transaction references.

        Returns:
            ``True`` if this call performed the transition, ``False`` if the
            digest was missing or already anchored.
        """
        changed = await self._write(
            _MARK_ANCHORED_SQL,
            (adapter_tx_id, chain_tx_hash, site_id, day.isoformat()),
        )
        return changed == 1

    # ------------------------------------------------------------------
    # Sites
    # ------------------------------------------------------------------

    async def upsert_site(self, site: Site) -> None:
        """Insert or update a site's configuration."""
        await self._write(_UPSERT_SITE_SQL, site.model_dump())

    async def get_site(self, site_id: str) -> Site | None:
        """Return the configured site, or None."""
        row = await self._fetch_one(_SELECT_SITE_SQL, (site_id,))
        return Site.model_validate(row) if row is not None else None

    async def list_sites(self) -> list[Site]:
        """Return every configured site ordered by id."""
        rows = await self._fetch_all(_SELECT_SITES_SQL, ())
        return [Site.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Purge
    # ------------------------------------------------------------------

    async def purge_day(self, site_id: str, day: date) -> PurgeSummary:
        """Delete a site-day's records, hourly summaries and unanchored digest.

        An anchored digest is kept so its anchor flag is never reverted.
        """
        start, end = day_bounds(day)
        window = (site_id, format_instant(start), format_instant(end))
        async with self._transaction() as db:
            records = (await db.execute(_DELETE_RECORDS_RANGE_SQL, window)).rowcount
            hourly = (await db.execute(_DELETE_HOURLY_RANGE_SQL, window)).rowcount
            digests = (
                await db.execute(_DELETE_UNANCHORED_DIGEST_SQL, (site_id, day.isoformat()))
            ).rowcount

        retained = False
        if digests == 0:
            retained = await self.get_digest(site_id, day) is not None
        return PurgeSummary(
            records=records,
            hourly=hourly,
            digest_deleted=digests == 1,
            digest_retained=retained,
        )
