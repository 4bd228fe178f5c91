"""
Administrative command line for the oracle.

Every command prints a JSON document on stdout and exits non-zero on failure,
so it can be scripted. Keys are camelCase (``merkleRoot``, ``energyKWh``).

Usage:
    python -m iot_oracle.src.cli recompute PRJ001 2024-01-15 [--anchor]
    python -m iot_oracle.src.cli backfill PRJ001 2024-01-01 2024-01-31
    python -m iot_oracle.src.cli validate PRJ001 2024-01-15 [--tolerance 0.001]
    python -m iot_oracle.src.cli proof PRJ001 2024-01-15 2024-01-15T12:00:00Z
    python -m iot_oracle.src.cli anchor PRJ001 2024-01-15 [--status]
    python -m iot_oracle.src.cli purge PRJ001 2024-01-15 [--rebuild]
    python -m iot_oracle.src.cli ingest readings.json
    python -m iot_oracle.src.cli preview PRJ001
    python -m iot_oracle.src.cli sites [--file sites.json] [--defaults]

Configuration comes from the same environment variables as the daemon.

CHANGELOG:
- 2026-10-19: Print camelCase keys; anchor --status reports confirmation (STORY-122)
- 2026-10-07: Add ingest and preview commands (STORY-115)
- 2026-10-06: Initial creation (STORY-114)

TODO:
- None
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import Any

from iot_oracle.src.aggregation import Aggregator
from iot_oracle.src.anchor import AnchorCoordinator
from iot_oracle.src.config import OracleSettings
from iot_oracle.src.errors import ConfigurationError, OracleError
from iot_oracle.src.ingestion import ingest_readings
from iot_oracle.src.locks import KeyedLocks, connect_redis
from iot_oracle.src.main import configure_logging
from iot_oracle.src.models import ExposedModel
from iot_oracle.src.scheduler import AsyncioScheduler, RecomputeScheduler
from iot_oracle.src.sites import DEFAULT_SITES, load_sites_file, sync_sites
from iot_oracle.src.store import SqliteStore
from iot_oracle.src.verification import build_proof, preview_today, validate_digest

logger = logging.getLogger(__name__)

Outcome = tuple[int, dict[str, Any]]


def _dump(model: ExposedModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


class _Context:
    """Components shared by the command handlers of one invocation."""

    def __init__(self, settings: OracleSettings, store: SqliteStore, locks: KeyedLocks) -> None:
        self.settings = settings
        self.store = store
        self.anchors = AnchorCoordinator.from_settings(settings, store, locks)
        self.recompute = RecomputeScheduler(
            store,
            Aggregator(store, locks),
            self.anchors,
            AsyncioScheduler(),
            anchor_delay_s=0.0,
        )


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


async def _cmd_recompute(ctx: _Context, args: argparse.Namespace) -> Outcome:
    digest = await ctx.recompute.recompute(args.site_id, args.day)
    if digest is None:
        return 0, {"siteId": args.site_id, "day": args.day.isoformat(), "digest": None}
    payload: dict[str, Any] = {"digest": _dump(digest)}
    if args.anchor:
        result = await ctx.anchors.anchor(args.site_id, args.day)
        payload["anchor"] = _dump(result)
        return (0 if result.success else 1), payload
    return 0, payload


async def _cmd_backfill(ctx: _Context, args: argparse.Namespace) -> Outcome:
    report = await ctx.recompute.backfill(args.site_id, args.start, args.end)
    return (1 if report.failed else 0), _dump(report)


async def _cmd_validate(ctx: _Context, args: argparse.Namespace) -> Outcome:
    report = await validate_digest(ctx.store, args.site_id, args.day, tolerance=args.tolerance)
    payload = _dump(report)
    payload["valid"] = report.is_valid
    return (0 if report.is_valid else 1), payload


async def _cmd_proof(ctx: _Context, args: argparse.Namespace) -> Outcome:
    proof = await build_proof(ctx.store, args.site_id, args.day, args.ts_utc)
    return (0 if proof.included else 1), _dump(proof)


async def _cmd_anchor(ctx: _Context, args: argparse.Namespace) -> Outcome:
    if args.status:
        status = await ctx.anchors.check_status(args.site_id, args.day)
        return 0, _dump(status)
    result = await ctx.anchors.anchor(args.site_id, args.day)
    return (0 if result.success else 1), _dump(result)


async def _cmd_purge(ctx: _Context, args: argparse.Namespace) -> Outcome:
    summary = await ctx.recompute.purge(args.site_id, args.day)
    payload: dict[str, Any] = {
        "siteId": args.site_id,
        "day": args.day.isoformat(),
        "records": summary.records,
        "hourly": summary.hourly,
        "digestDeleted": summary.digest_deleted,
        "digestRetained": summary.digest_retained,
    }
    if args.rebuild:
        digest = await ctx.recompute.recompute(args.site_id, args.day)
        payload["digest"] = _dump(digest) if digest else None
    return 0, payload


async def _cmd_ingest(ctx: _Context, args: argparse.Namespace) -> Outcome:
    try:
        text = Path(args.path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"cannot read readings file '{args.path}': {exc}") from exc
    result = await ingest_readings(
        ctx.store, json.loads(text), precision=ctx.settings.precision
    )
    payload = {
        "accepted": len(result.accepted),
        "rejected": [_dump(failure) for failure in result.rejected],
    }
    return (1 if result.rejected else 0), payload


async def _cmd_preview(ctx: _Context, args: argparse.Namespace) -> Outcome:
    preview = await preview_today(ctx.store, args.site_id)
    return 0, _dump(preview)


async def _cmd_sites(ctx: _Context, args: argparse.Namespace) -> Outcome:
    if args.defaults:
        await sync_sites(ctx.store, DEFAULT_SITES)
    if args.file:
        sites = load_sites_file(args.file, ctx.settings.default_baseline_factor_kg_per_kwh)
        await sync_sites(ctx.store, sites)
    sites = await ctx.store.list_sites()
    return 0, {"sites": [_dump(site) for site in sites]}


_HANDLERS = {
    "recompute": _cmd_recompute,
    "backfill": _cmd_backfill,
    "validate": _cmd_validate,
    "proof": _cmd_proof,
    "anchor": _cmd_anchor,
    "purge": _cmd_purge,
    "ingest": _cmd_ingest,
    "preview": _cmd_preview,
    "sites": _cmd_sites,
}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with one subcommand per operation."""
    p = argparse.ArgumentParser(
        prog="iot-oracle", description="IoT oracle administration commands"
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")
    sub = p.add_subparsers(dest="command", required=True)

    def site_day(name: str, help_text: str) -> argparse.ArgumentParser:
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("site_id", help="Site identifier, e.g. PRJ001")
        cmd.add_argument("day", type=date.fromisoformat, help="UTC day, YYYY-MM-DD")
        return cmd

    cmd = site_day("recompute", "Rebuild hourly summaries and the digest of one day")
    cmd.add_argument("--anchor", action="store_true", help="Anchor the rebuilt digest")

    cmd = sub.add_parser("backfill", help="Recompute a range of days (inclusive)")
    cmd.add_argument("site_id")
    cmd.add_argument("start", type=date.fromisoformat)
    cmd.add_argument("end", type=date.fromisoformat)

    cmd = site_day("validate", "Compare a stored digest with its records")
    cmd.add_argument(
        "--tolerance", type=float, default=1e-3, help="Numeric tolerance (default 0.001)"
    )

    cmd = site_day("proof", "Merkle inclusion proof for one record")
    cmd.add_argument("ts_utc", help="Record instant, ISO-8601 with offset")

    cmd = site_day("anchor", "Anchor a digest (idempotent)")
    cmd.add_argument("--status", action="store_true", help="Only query the anchor status")

    cmd = site_day("purge", "Delete a day's records and unanchored derived data")
    cmd.add_argument("--rebuild", action="store_true", help="Recompute after purging")

    cmd = sub.add_parser("ingest", help="Ingest a JSON list of raw readings")
    cmd.add_argument("path")

    cmd = sub.add_parser("preview", help="Running totals for the current UTC day")
    cmd.add_argument("site_id")

    cmd = sub.add_parser("sites", help="List sites, optionally loading them first")
    cmd.add_argument("--file", help="JSON sites file to load")
    cmd.add_argument("--defaults", action="store_true", help="Load the built-in sites")

    return p


async def run(args: argparse.Namespace, settings: OracleSettings) -> int:
    """Execute the parsed command, print its JSON result, return the exit code."""
    redis_client = connect_redis(settings.redis_url) if settings.redis_url else None
    locks = KeyedLocks(redis_client, ttl_s=settings.lock_ttl_s, wait_s=settings.lock_wait_s)
    try:
        async with SqliteStore(settings.database_path) as store:
            ctx = _Context(settings, store, locks)
            try:
                code, payload = await _HANDLERS[args.command](ctx, args)
            except OracleError as exc:
                logger.error(
                    "%s failed: %s",
                    args.command,
                    exc,
                    extra={"correlation_id": exc.correlation_id},
                )
                code = 1
                payload = {
                    "error": exc.kind,
                    "message": exc.message,
                    "siteId": exc.site_id,
                    "period": exc.period,
                    "correlationId": exc.correlation_id,
                }
            except ValueError as exc:
                code, payload = 1, {"error": "invalid_argument", "message": str(exc)}
    finally:
        if redis_client is not None:
            await redis_client.aclose()

    print(json.dumps(payload, indent=2, default=str))
    return code


def main(argv: list[str] | None = None) -> int:
    """Synchronous entrypoint; returns the process exit code."""
    args = build_parser().parse_args(argv)
    configure_logging(logging.INFO if args.verbose else logging.WARNING)
    return asyncio.run(run(args, OracleSettings()))


if __name__ == "__main__":
    sys.exit(main())
