"""
Read-only checks over stored digests: validation, inclusion proofs and the
running preview of the current day.

- validate_digest: recompute root, energy and avoided emissions from the
  stored records (nothing is written) and compare with the stored digest.
- build_proof: Merkle inclusion proof for one record against the stored
  daily root.
- preview_today: running totals of the current UTC day plus the last
  anchored day.

CHANGELOG:
- 2026-10-06: Initial creation (STORY-114)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from datetime import UTC, date, datetime

from iot_oracle.src.aggregation import build_digest, total_energy
from iot_oracle.src.carbon import avoided_tco2e
from iot_oracle.src.errors import DigestNotFoundError, SiteNotFoundError
from iot_oracle.src.merkle import MerkleTree, verify_proof
from iot_oracle.src.models import Proof, Site, TodayPreview, ValidationReport
from iot_oracle.src.normalizer import parse_instant
from iot_oracle.src.store import TelemetryStore, day_bounds

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 1e-3


async def _require_site(store: TelemetryStore, site_id: str, period: str | None = None) -> Site:
    site = await store.get_site(site_id)
    if site is None:
        raise SiteNotFoundError(
            f"site '{site_id}' is not configured", site_id=site_id, period=period
        )
    return site


async def validate_digest(
    store: TelemetryStore,
    site_id: str,
    day: date,
    tolerance: float = DEFAULT_TOLERANCE,
) -> ValidationReport:
    """Compare the stored digest of (site, day) with a fresh recomputation.

    The root must match exactly; energy and avoided emissions must agree
    within *tolerance*.

    Raises:
        DigestNotFoundError: If no digest is stored for (site, day).
        SiteNotFoundError: If the site is not configured.
    """
    period = day.isoformat()
    stored = await store.get_digest(site_id, day)
    if stored is None:
        raise DigestNotFoundError(
            f"no digest for {site_id} {period}", site_id=site_id, period=period
        )
    site = await _require_site(store, site_id, period)

    start, end = day_bounds(day)
    records = await store.records_between(site_id, start, end)
    fresh = build_digest(site, day, records)

    recomputed_root = fresh.merkle_root if fresh else ""
    recomputed_energy = fresh.energy_kwh if fresh else 0.0
    recomputed_avoided = fresh.avoided_tco2e if fresh else 0.0

    report = ValidationReport(
        site_id=site_id,
        day=day,
        stored_root=stored.merkle_root,
        recomputed_root=recomputed_root,
        stored_energy_kwh=stored.energy_kwh,
        recomputed_energy_kwh=recomputed_energy,
        stored_avoided_tco2e=stored.avoided_tco2e,
        recomputed_avoided_tco2e=recomputed_avoided,
        row_count=len(records),
        root_match=stored.merkle_root == recomputed_root,
        energy_match=math.isclose(
            stored.energy_kwh, recomputed_energy, rel_tol=0.0, abs_tol=tolerance
        ),
        avoided_match=math.isclose(
            stored.avoided_tco2e, recomputed_avoided, rel_tol=0.0, abs_tol=tolerance
        ),
    )

    if report.is_valid:
        logger.info("Digest %s %s is valid", site_id, period)
    else:
        logger.warning(
            "Digest %s %s does not match its records (root=%s energy=%s avoided=%s)",
            site_id,
            period,
            report.root_match,
            report.energy_match,
            report.avoided_match,
            extra={"site_id": site_id, "period": period},
        )
    return report


async def build_proof(
    store: TelemetryStore,
    site_id: str,
    day: date,
    ts_utc: str | datetime,
) -> Proof:
    """Build the inclusion proof of the record at *ts_utc* in the day's root.

    The proof is built over the day's current row hashes and checked against
    the stored root; ``included`` is False when the record does not exist or
    the records no longer produce the stored root.

    Raises:
        DigestNotFoundError: If no digest is stored for (site, day).
        ValueError: If *ts_utc* cannot be parsed.
    """
    period = day.isoformat()
    digest = await store.get_digest(site_id, day)
    if digest is None:
        raise DigestNotFoundError(
            f"no digest for {site_id} {period}", site_id=site_id, period=period
        )

    instant = parse_instant(ts_utc)
    record = await store.get_record(site_id, instant)
    if record is None:
        return Proof(included=False, root=digest.merkle_root)

    start, end = day_bounds(day)
    records = await store.records_between(site_id, start, end)
    tree = MerkleTree(r.row_hash for r in records) if records else None
    if tree is None or record.row_hash not in tree:
        return Proof(included=False, leaf_hash=record.row_hash, root=digest.merkle_root)

    branch = tree.proof(record.row_hash)
    return Proof(
        included=verify_proof(record.row_hash, branch, digest.merkle_root),
        leaf_hash=record.row_hash,
        branch=branch,
        root=digest.merkle_root,
    )


async def preview_today(
    store: TelemetryStore,
    site_id: str,
    now: datetime | None = None,
) -> TodayPreview:
    """Running energy and avoided emissions for the current UTC day.

    Raises:
        SiteNotFoundError: If the site is not configured.
    """
    site = await _require_site(store, site_id)
    today = (now or datetime.now(UTC)).astimezone(UTC).date()
    start, end = day_bounds(today)
    records = await store.records_between(site_id, start, end)
    energy = total_energy(records)
    last = await store.last_anchored_digest(site_id)
    return TodayPreview(
        site_id=site_id,
        energy_kwh=energy,
        avoided_tco2e=avoided_tco2e(energy, site.baseline_kg_per_kwh),
        row_count=len(records),
        last_anchor_day=last.day if last else None,
        last_anchor_tx_hash=last.chain_tx_hash if last else None,
    )
