"""
Canonical row representation and SHA-256 row hashing.

The canonical row is a ``|``-joined string of:

    site_id | instant | energy | power | irradiance | temperature | status

where the instant is rendered as ``YYYY-MM-DDTHH:MM:SS.sssZ`` and every
metric as a fixed-decimal string at its configured precision. Absent metrics
and an absent status render as the empty string, never as ``0``. Wind speed
and the source tag are not part of the row.

The digest doubles as the record's tamper-evidence fingerprint and as its
idempotency key for store upserts.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from iot_oracle.src.normalizer import Precision

FIELD_SEPARATOR = "|"


def sha256_hex(text: str) -> str:
    """Return the lowercase hex SHA-256 digest of *text* encoded as UTF-8."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def format_instant(ts: datetime) -> str:
    """Render an aware datetime as ``YYYY-MM-DDTHH:MM:SS.sssZ`` in UTC."""
    ts = ts.astimezone(UTC)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def format_fixed(value: float | None, places: int) -> str:
    """Render *value* with exactly *places* decimals, or ``""`` when absent."""
    if value is None:
        return ""
    return f"{value:.{places}f}"


def canonical_row(
    *,
    site_id: str,
    ts_utc: datetime,
    ac_energy_kwh: float | None,
    ac_power_kw: float | None,
    poa_irr_wm2: float | None,
    temp_c: float | None,
    status: str | None,
    precision: Precision,
) -> str:
    """Build the delimiter-joined canonical string for one record."""
    return FIELD_SEPARATOR.join(
        (
            site_id,
            format_instant(ts_utc),
            format_fixed(ac_energy_kwh, precision.energy),
            format_fixed(ac_power_kw, precision.power),
            format_fixed(poa_irr_wm2, precision.irradiance),
            format_fixed(temp_c, precision.temp),
            status or "",
        )
    )


def row_hash(
    *,
    site_id: str,
    ts_utc: datetime,
    ac_energy_kwh: float | None,
    ac_power_kw: float | None,
    poa_irr_wm2: float | None,
    temp_c: float | None,
    status: str | None,
    precision: Precision,
) -> str:
    """Compute the 64-char lowercase hex row hash of a normalized record."""
    return sha256_hex(
        canonical_row(
            site_id=site_id,
            ts_utc=ts_utc,
            ac_energy_kwh=ac_energy_kwh,
            ac_power_kw=ac_power_kw,
            poa_irr_wm2=poa_irr_wm2,
            temp_c=temp_c,
            status=status,
            precision=precision,
        )
    )
