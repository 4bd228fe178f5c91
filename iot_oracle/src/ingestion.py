"""
Ingestion service for batches of raw readings.

Each reading is validated, normalized, hashed and upserted keyed by
(site, instant), so re-delivering a reading is idempotent and a corrected
reading for the same instant overwrites the old one (last write wins).
A reading that fails validation is reported and skipped; it never aborts the
rest of the batch.

CHANGELOG:
- 2026-10-05: Initial creation (STORY-110)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from iot_oracle.src.errors import ReadingValidationError, new_correlation_id
from iot_oracle.src.models import FailureReport, IngestResult, RawReading
from iot_oracle.src.normalizer import DEFAULT_PRECISION, Precision, normalize
from iot_oracle.src.store import TelemetryStore

logger = logging.getLogger(__name__)


def _coerce(item: RawReading | dict[str, Any]) -> RawReading:
    if isinstance(item, RawReading):
        return item
    try:
        return RawReading.model_validate(item)
    except ValidationError as exc:
        raise ReadingValidationError(
            f"malformed reading: {exc.error_count()} validation error(s)",
            site_id=item.get("site_id") if isinstance(item, dict) else None,
            period=str(item.get("ts_utc")) if isinstance(item, dict) else None,
        ) from exc


async def ingest_readings(
    store: TelemetryStore,
    readings: Iterable[RawReading | dict[str, Any]],
    precision: Precision = DEFAULT_PRECISION,
) -> IngestResult:
    """Normalize and persist a batch of readings.

    Args:
        store: Telemetry repository.
        readings: RawReading models or plain dicts of the same shape.
        precision: Decimal places used to normalize and hash.

    Returns:
        IngestResult with the stored records and a FailureReport per
        rejected reading.
    """
    correlation_id = new_correlation_id()
    result = IngestResult()

    for item in readings:
        try:
            record = normalize(_coerce(item), precision)
        except ReadingValidationError as exc:
            logger.warning(
                "Rejected reading: %s",
                exc,
                extra={
                    "site_id": exc.site_id,
                    "period": exc.period,
                    "correlation_id": exc.correlation_id,
                },
            )
            result.rejected.append(FailureReport.from_error(exc))
            continue
        await store.upsert_record(record)
        result.accepted.append(record)

    logger.info(
        "Ingested batch: %d accepted, %d rejected",
        len(result.accepted),
        len(result.rejected),
        extra={"correlation_id": correlation_id},
    )
    return result
