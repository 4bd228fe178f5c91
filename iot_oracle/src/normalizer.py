"""
Pure normalizer that converts a RawReading into a hashed NormalizedRecord.

Validates the site id and instant, rejects non-finite metric values, clamps
every present metric into its physically plausible range, rounds it to the
configured number of decimal places, and computes the row hash.

Absent metrics stay absent. A missing value and a zero value must produce
different row hashes, so nothing is ever defaulted to 0.

This is a pure function: no side effects, no I/O, no clock.

CHANGELOG:
- 2026-10-19: Round exact half-way ties up instead of to even (STORY-119)
- 2026-10-05: Truncate instants to millisecond precision to match the row hash
- 2026-10-02: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from iot_oracle.src.errors import ReadingValidationError
from iot_oracle.src.hashing import row_hash
from iot_oracle.src.models import NormalizedRecord, RawReading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Precision:
    """Decimal places per metric family.

    Attributes:
        power: AC power (kW).
        energy: AC energy (kWh).
        temp: Temperature (°C); wind speed shares it.
        irradiance: Irradiance (W/m²).
    """

    power: int = 3
    energy: int = 2
    temp: int = 1
    irradiance: int = 1


DEFAULT_PRECISION = Precision()


@dataclass(frozen=True)
class MetricRule:
    """Clamp range and precision family for one metric field.

    Attributes:
        field: Attribute name on RawReading / NormalizedRecord.
        valid_range: Inclusive (low, high) clamp bounds.
        precision: Name of the Precision attribute used for rounding.
    """

    field: str
    valid_range: tuple[float, float]
    precision: str


METRIC_RULES: tuple[MetricRule, ...] = (
    MetricRule("poa_irr_wm2", (0.0, 2000.0), "irradiance"),
    MetricRule("temp_c", (-50.0, 80.0), "temp"),
    MetricRule("wind_mps", (0.0, 100.0), "temp"),
    MetricRule("ac_power_kw", (0.0, 10000.0), "power"),
    MetricRule("ac_energy_kwh", (0.0, 1000.0), "energy"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def parse_instant(value: str | datetime) -> datetime:
    """Parse an ISO-8601 instant into an aware UTC datetime (ms precision).

    Raises:
        ValueError: If the value cannot be parsed or carries no UTC offset.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        raise ValueError(f"instant '{value}' has no UTC offset")

    parsed = parsed.astimezone(UTC)
    return parsed.replace(microsecond=(parsed.microsecond // 1000) * 1000)


def round_metric(value: float, places: int) -> float:
    """Round to *places* decimals; ``-0.0`` becomes ``0.0``.

    Rounds the exact binary value half away from zero, so ``25.25`` becomes
    ``25.3`` while ``1.005`` (stored as 1.00499...) becomes ``1.0``.
    """
    exact = Decimal(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
    return float(exact) + 0.0


def _clamp(value: float, rule: MetricRule, site_id: str) -> float:
    lo, hi = rule.valid_range
    clamped = min(max(value, lo), hi)
    if clamped != value:
        logger.warning(
            "Metric '%s' for site %s: value %.6g outside (%s, %s), clamped to %.6g",
            rule.field,
            site_id,
            value,
            lo,
            hi,
            clamped,
        )
    return clamped


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize(
    reading: RawReading,
    precision: Precision = DEFAULT_PRECISION,
) -> NormalizedRecord:
    """Convert a raw reading into a clamped, rounded, hashed record.

    Args:
        reading: The reading delivered by an ingestion transport.
        precision: Decimal places per metric family.

    Returns:
        The NormalizedRecord, including its row hash.

    Raises:
        ReadingValidationError: If the site id is empty, the instant cannot
            be parsed, or any present metric is NaN or infinite.
    """
    site_id = reading.site_id
    if not site_id or not site_id.strip():
        raise ReadingValidationError("site id is empty", period=str(reading.ts_utc))

    try:
        ts_utc = parse_instant(reading.ts_utc)
    except (TypeError, ValueError) as exc:
        raise ReadingValidationError(
            f"unparseable instant: {exc}",
            site_id=site_id,
            period=str(reading.ts_utc),
        ) from None

    metrics: dict[str, float | None] = {}
    for rule in METRIC_RULES:
        value = getattr(reading, rule.field)
        if value is None:
            metrics[rule.field] = None
            continue
        if not math.isfinite(value):
            raise ReadingValidationError(
                f"metric '{rule.field}' is not finite ({value})",
                site_id=site_id,
                period=ts_utc.isoformat(),
            )
        clamped = _clamp(float(value), rule, site_id)
        metrics[rule.field] = round_metric(clamped, getattr(precision, rule.precision))

    digest = row_hash(
        site_id=site_id,
        ts_utc=ts_utc,
        ac_energy_kwh=metrics["ac_energy_kwh"],
        ac_power_kw=metrics["ac_power_kw"],
        poa_irr_wm2=metrics["poa_irr_wm2"],
        temp_c=metrics["temp_c"],
        status=reading.status.value if reading.status is not None else None,
        precision=precision,
    )

    return NormalizedRecord(
        site_id=site_id,
        ts_utc=ts_utc,
        status=reading.status,
        source=reading.source,
        uniq_key=reading.uniq_key,
        row_hash=digest,
        **metrics,
    )
