"""
Oracle daemon entry point.

Wires the pipeline together and runs the recompute schedule:
1. **Hourly job**: at every UTC hour boundary, aggregates the hour that just
   closed for every configured site.
2. **Daily job**: at DAILY_RUN_HOUR_UTC:DAILY_RUN_MINUTE_UTC, aggregates the
   previous UTC day into a digest per site and schedules its anchor
   submission after ANCHOR_DELAY_S.

Both jobs are resilient: a failing site is reported and does not stop the
others. Graceful shutdown on SIGTERM/SIGINT sets a shared asyncio.Event; the
periodic loops stop and pending anchor jobs are drained before the store is
closed.

Structured JSON logging is used for all events, carrying site_id, period and
correlation_id when the caller attaches them. A HealthWriter instance tracks
last_hourly_ts, last_daily_ts, last_anchor_ts, pending_anchors and
failed_jobs.

CHANGELOG:
- 2026-10-08: Drain anchor jobs on shutdown; health counters (STORY-117)
- 2026-10-05: Initial creation (STORY-113)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from iot_oracle.src.aggregation import Aggregator
from iot_oracle.src.anchor import AnchorCoordinator
from iot_oracle.src.config import OracleSettings
from iot_oracle.src.health import HealthWriter
from iot_oracle.src.locks import KeyedLocks, connect_redis
from iot_oracle.src.scheduler import (
    AsyncioScheduler,
    DailyTrigger,
    HourlyTrigger,
    RecomputeScheduler,
)
from iot_oracle.src.sites import load_sites_file, sync_sites
from iot_oracle.src.store import SqliteStore

logger = logging.getLogger(__name__)

_CONTEXT_FIELDS = ("site_id", "period", "correlation_id")
_DRAIN_TIMEOUT_S = 60.0


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter with pipeline context fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging on the root logger (stderr)."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: OracleSettings) -> None:
    """Log a config summary at startup; the adapter key is only fingerprinted."""
    logger.info(
        "Oracle daemon starting with config: "
        "database_path=%s, redis_url_set=%s, anchor_enabled=%s, "
        "adapter_api_url=%s, anchor_max_attempts=%s, anchor_base_delay_s=%s, "
        "anchor_retry_client_errors=%s, anchor_delay_s=%s, precision=%s, "
        "daily_run=%02d:%02d UTC, sites_file=%s, health_path=%s, "
        "adapter_key_masked=%s",
        settings.database_path,
        settings.redis_url is not None,
        settings.anchor_enabled,
        settings.adapter_api_url,
        settings.anchor_max_attempts,
        settings.anchor_base_delay_s,
        settings.anchor_retry_client_errors,
        settings.anchor_delay_s,
        settings.precision,
        settings.daily_run_hour_utc,
        settings.daily_run_minute_utc,
        settings.sites_file,
        settings.health_path,
        _masked_token(settings.adapter_api_key),
    )
    if settings.anchor_enabled and not settings.anchor_configured:
        logger.warning(
            "ANCHOR_ENABLED is set but ADAPTER_API_URL/ADAPTER_API_KEY are missing; "
            "every anchor job will fail with a configuration error"
        )


# ---------------------------------------------------------------------------
# Runner with graceful shutdown
# ---------------------------------------------------------------------------


async def run_daemon(
    *,
    settings: OracleSettings,
    store: SqliteStore,
    locks: KeyedLocks,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
) -> None:
    """Run the hourly and daily jobs until *shutdown_event* is set.

    Pending anchor jobs are drained (bounded by a timeout) before returning.
    """
    if settings.sites_file:
        sites = load_sites_file(settings.sites_file, settings.default_baseline_factor_kg_per_kwh)
        await sync_sites(store, sites)

    scheduler = AsyncioScheduler(
        on_pending_change=health.set_pending_anchors if health is not None else None
    )
    recompute = RecomputeScheduler(
        store,
        Aggregator(store, locks),
        AnchorCoordinator.from_settings(settings, store, locks),
        scheduler,
        anchor_delay_s=settings.anchor_delay_s,
        health=health,
    )
    recompute.register(
        HourlyTrigger(),
        DailyTrigger(hour=settings.daily_run_hour_utc, minute=settings.daily_run_minute_utc),
    )

    await scheduler.run(shutdown_event)

    logger.info("Waiting for pending anchor jobs before exit")
    await scheduler.drain(timeout_s=_DRAIN_TIMEOUT_S)
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run the schedule.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    configure_logging()

    settings = OracleSettings()
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    redis_client = connect_redis(settings.redis_url) if settings.redis_url else None
    locks = KeyedLocks(redis_client, ttl_s=settings.lock_ttl_s, wait_s=settings.lock_wait_s)
    health = HealthWriter(settings.health_path)

    try:
        async with SqliteStore(settings.database_path) as store:
            await run_daemon(
                settings=settings,
                store=store,
                locks=locks,
                shutdown_event=shutdown_event,
                health=health,
            )
    finally:
        if redis_client is not None:
            await redis_client.aclose()


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the oracle daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
