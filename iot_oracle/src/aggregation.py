"""
Aggregation service for hourly summaries and daily digests.

Reads a site's normalized records over a half-open UTC window and derives:

- HourlySummary: sum of present energy, max of present power, mean of present
  temperature and irradiance (absent values ignored).
- DailyDigest: sum of present energy, Merkle root over the day's row hashes,
  avoided emissions from the site's baseline factor.

Both are upserted keyed by (site, period) under the advisory
per-(site, period) lock, so a scheduled run and an on-demand recompute of
the same period do not interleave. Empty windows yield ``None`` and write
nothing. A digest upsert preserves the stored anchor state.

Energy totals use ``math.fsum`` so the result does not depend on row order.

CHANGELOG:
- 2026-10-06: Split pure summarize/digest helpers for validation (STORY-114)
- 2026-10-03: Hold the per-(site, period) lock around each upsert (STORY-108)
- 2026-10-03: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime, timedelta

from iot_oracle.src.carbon import avoided_tco2e
from iot_oracle.src.errors import SiteNotFoundError
from iot_oracle.src.hashing import format_instant
from iot_oracle.src.locks import KeyedLocks, aggregation_key
from iot_oracle.src.merkle import merkle_root
from iot_oracle.src.models import DailyDigest, HourlySummary, NormalizedRecord, Site
from iot_oracle.src.store import TelemetryStore, day_bounds

logger = logging.getLogger(__name__)

_ONE_HOUR = timedelta(hours=1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def floor_hour(ts: datetime) -> datetime:
    """Truncate an aware datetime to the start of its UTC hour.

    Raises:
        ValueError: If *ts* is naive.
    """
    if ts.tzinfo is None:
        raise ValueError("hour start must be timezone-aware")
    return ts.astimezone(UTC).replace(minute=0, second=0, microsecond=0)


def _present(values: Iterable[float | None]) -> list[float]:
    return [v for v in values if v is not None]


def _mean(values: Sequence[float]) -> float | None:
    return math.fsum(values) / len(values) if values else None


def total_energy(records: Iterable[NormalizedRecord]) -> float:
    """Order-independent sum of the present energy values."""
    return math.fsum(_present(r.ac_energy_kwh for r in records))


def summarize_hour(
    site_id: str, hour_utc: datetime, records: Sequence[NormalizedRecord]
) -> HourlySummary | None:
    """Build the summary of one hour's records, or ``None`` when empty."""
    if not records:
        return None
    powers = _present(r.ac_power_kw for r in records)
    return HourlySummary(
        site_id=site_id,
        hour_utc=hour_utc,
        energy_kwh=total_energy(records),
        max_power_kw=max(powers) if powers else None,
        avg_temp_c=_mean(_present(r.temp_c for r in records)),
        avg_irr_wm2=_mean(_present(r.poa_irr_wm2 for r in records)),
        row_count=len(records),
    )


def build_digest(
    site: Site, day: date, records: Sequence[NormalizedRecord]
) -> DailyDigest | None:
    """Build the digest of one day's records, or ``None`` when empty.

    Pure: nothing is read or written. Anchor fields are left at defaults.
    """
    if not records:
        return None
    energy = total_energy(records)
    return DailyDigest(
        site_id=site.site_id,
        day=day,
        energy_kwh=energy,
        avoided_tco2e=avoided_tco2e(energy, site.baseline_kg_per_kwh),
        row_count=len(records),
        merkle_root=merkle_root(r.row_hash for r in records),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class Aggregator:
    """Derives and persists hourly summaries and daily digests.

    Args:
        store: Telemetry repository.
        locks: Keyed locks shared with the rest of the process. A private
            process-local instance is created when omitted.
    """

    def __init__(self, store: TelemetryStore, locks: KeyedLocks | None = None) -> None:
        self._store = store
        self._locks = locks or KeyedLocks()

    async def aggregate_hourly(self, site_id: str, hour_start: datetime) -> HourlySummary | None:
        """Aggregate ``[hour_start, hour_start + 1h)`` for *site_id*.

        *hour_start* is floored to its UTC hour.

        Returns:
            The stored summary, or ``None`` if the hour has no records.
        """
        hour_utc = floor_hour(hour_start)
        period = format_instant(hour_utc)
        log_extra = {"site_id": site_id, "period": period}

        async with self._locks.hold(aggregation_key(site_id, period)):
            records = await self._store.records_between(site_id, hour_utc, hour_utc + _ONE_HOUR)
            summary = summarize_hour(site_id, hour_utc, records)
            if summary is None:
                logger.debug("No records for %s in hour %s", site_id, period, extra=log_extra)
                return None
            await self._store.upsert_hourly(summary)

        logger.info(
            "Hourly summary %s %s: %d rows, %.3f kWh",
            site_id,
            period,
            summary.row_count,
            summary.energy_kwh,
            extra=log_extra,
        )
        return summary

    async def aggregate_daily(self, site_id: str, day: date) -> DailyDigest | None:
        """Aggregate the UTC day *day* for *site_id* into a digest.

        Returns:
            The stored digest (including any preserved anchor state), or
            ``None`` if the day has no records.

        Raises:
            SiteNotFoundError: If *site_id* is not configured. Checked before
                any record is read.
        """
        period = day.isoformat()
        log_extra = {"site_id": site_id, "period": period}

        site = await self._store.get_site(site_id)
        if site is None:
            raise SiteNotFoundError(
                f"site '{site_id}' is not configured", site_id=site_id, period=period
            )

        start, end = day_bounds(day)
        async with self._locks.hold(aggregation_key(site_id, period)):
            records = await self._store.records_between(site_id, start, end)
            digest = build_digest(site, day, records)
            if digest is None:
                logger.info("No records for %s on %s, no digest", site_id, period, extra=log_extra)
                return None

            previous = await self._store.get_digest(site_id, day)
            stored = await self._store.upsert_digest(digest)

        root_changed = previous is not None and previous.merkle_root != stored.merkle_root
        if root_changed and previous.anchored:
            logger.warning(
                "Recomputed root for anchored digest %s %s differs from previous root %s",
                site_id,
                period,
                previous.merkle_root,
                extra=log_extra,
            )

        logger.info(
            "Daily digest %s %s: %d rows, %.3f kWh, %.6f tCO2e, root %s",
            site_id,
            period,
            stored.row_count,
            stored.energy_kwh,
            stored.avoided_tco2e,
            stored.merkle_root,
            extra=log_extra,
        )
        return stored
