"""
Recompute scheduling: periodic triggers, an asyncio job runner, and the
per-site batch runs.

Components:
- HourlyTrigger / DailyTrigger: compute the next UTC fire time.
- Scheduler: the contract the pipeline schedules through
  (``register_periodic`` and ``submit``).
- AsyncioScheduler: runs each periodic job in its own loop until a shutdown
  event is set, and runs submitted one-off jobs (anchors) as independent,
  tracked tasks that can be drained on shutdown.
- RecomputeScheduler: the hourly/daily batch runs over every configured site
  with per-site failure isolation, plus on-demand recompute, backfill and
  purge. A successful daily digest schedules its anchor after a delay.

Job functions never let an exception escape into the loop: a failing site is
reported in the BatchReport and the loop moves on.

CHANGELOG:
- 2026-10-19: Check the site before recompute writes any hourly summary (STORY-121)
- 2026-10-08: Track pending anchors and failures in the health file (STORY-117)
- 2026-10-06: Add backfill and purge (STORY-114)
- 2026-10-05: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Protocol

from iot_oracle.src.aggregation import Aggregator, floor_hour
from iot_oracle.src.anchor import AnchorCoordinator
from iot_oracle.src.errors import SiteNotFoundError
from iot_oracle.src.health import HealthWriter
from iot_oracle.src.models import (
    AnchorErrorKind,
    AnchorResult,
    BatchReport,
    DailyDigest,
    FailureReport,
)
from iot_oracle.src.store import PurgeSummary, TelemetryStore

logger = logging.getLogger(__name__)

PeriodicJob = Callable[[datetime], Awaitable[object]]
OneOffJob = Callable[[], Awaitable[object]]

_ONE_HOUR = timedelta(hours=1)
_ONE_DAY = timedelta(days=1)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


class Trigger(Protocol):
    """Computes when a periodic job fires next."""

    def next_fire(self, now: datetime) -> datetime: ...


@dataclass(frozen=True)
class HourlyTrigger:
    """Fires at *minute* past every UTC hour."""

    minute: int = 0

    def next_fire(self, now: datetime) -> datetime:
        """Return the first fire time strictly after *now*."""
        candidate = floor_hour(now).replace(minute=self.minute)
        if candidate <= now:
            candidate += _ONE_HOUR
        return candidate


@dataclass(frozen=True)
class DailyTrigger:
    """Fires once per UTC day at *hour*:*minute*."""

    hour: int = 1
    minute: int = 0

    def next_fire(self, now: datetime) -> datetime:
        """Return the first fire time strictly after *now*."""
        now = now.astimezone(UTC)
        candidate = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += _ONE_DAY
        return candidate


# ---------------------------------------------------------------------------
# Scheduler contract and asyncio implementation
# ---------------------------------------------------------------------------


class Scheduler(Protocol):
    """Scheduling contract used by RecomputeScheduler."""

    def register_periodic(self, name: str, trigger: Trigger, job: PeriodicJob) -> None: ...

    def submit(self, name: str, job: OneOffJob, delay_s: float = 0.0) -> None: ...


class AsyncioScheduler:
    """In-process scheduler built on asyncio tasks.

    Periodic jobs receive their scheduled fire time. Submitted jobs run as
    independent tasks, so a slow anchor retry for one site never delays
    another.

    Args:
        clock: Returns the current aware UTC time.
        on_pending_change: Called with the number of in-flight submitted
            jobs whenever it changes.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = _utcnow,
        on_pending_change: Callable[[int], None] | None = None,
    ) -> None:
        self._clock = clock
        self._on_pending_change = on_pending_change
        self._periodic: dict[str, tuple[Trigger, PeriodicJob]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Number of submitted jobs not yet finished."""
        return len(self._tasks)

    @property
    def registered(self) -> list[str]:
        """Names of the registered periodic jobs."""
        return list(self._periodic)

    def register_periodic(self, name: str, trigger: Trigger, job: PeriodicJob) -> None:
        """Register *job* to run every time *trigger* fires.

        Raises:
            ValueError: If *name* is already registered.
        """
        if name in self._periodic:
            raise ValueError(f"periodic job '{name}' is already registered")
        self._periodic[name] = (trigger, job)

    def submit(self, name: str, job: OneOffJob, delay_s: float = 0.0) -> None:
        """Run *job* once after *delay_s* seconds as a tracked task."""
        task = asyncio.create_task(self._run_one_off(name, job, delay_s), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        self._notify_pending()

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Run every periodic job until *shutdown_event* is set."""
        logger.info("Scheduler started with jobs: %s", ", ".join(self._periodic) or "none")
        await asyncio.gather(
            *(
                self._periodic_loop(name, trigger, job, shutdown_event)
                for name, (trigger, job) in self._periodic.items()
            )
        )
        logger.info("Scheduler stopped")

    async def drain(self, timeout_s: float | None = None) -> None:
        """Wait for submitted jobs to finish; cancel them after *timeout_s*."""
        if not self._tasks:
            return
        logger.info("Draining %d pending job(s)", len(self._tasks))
        tasks = list(self._tasks)
        _, still_running = await asyncio.wait(tasks, timeout=timeout_s)
        for task in still_running:
            logger.warning("Cancelling job %s still running at shutdown", task.get_name())
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _periodic_loop(
        self,
        name: str,
        trigger: Trigger,
        job: PeriodicJob,
        shutdown_event: asyncio.Event,
    ) -> None:
        while not shutdown_event.is_set():
            fire_at = trigger.next_fire(self._clock())
            wait_s = max(0.0, (fire_at - self._clock()).total_seconds())
            logger.debug("Job %s next fires at %s", name, fire_at.isoformat())
            # Use wait with timeout so we can check shutdown between sleeps
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), timeout=wait_s)
            if shutdown_event.is_set():
                break
            try:
                await job(fire_at)
            except Exception:
                logger.error("Periodic job %s failed", name, exc_info=True)
        logger.info("Periodic job %s stopped", name)

    async def _run_one_off(self, name: str, job: OneOffJob, delay_s: float) -> None:
        if delay_s > 0:
            await asyncio.sleep(delay_s)
        try:
            await job()
        except Exception:
            logger.error("Job %s failed", name, exc_info=True)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        self._notify_pending()

    def _notify_pending(self) -> None:
        if self._on_pending_change is not None:
            self._on_pending_change(len(self._tasks))


# ---------------------------------------------------------------------------
# Batch runs
# ---------------------------------------------------------------------------


class RecomputeScheduler:
    """Runs aggregation over every configured site and schedules anchors.

    Args:
        store: Telemetry repository (site list source).
        aggregator: Hourly/daily aggregator.
        anchors: Anchor coordinator, or None when anchoring is not wired.
        scheduler: Where anchor jobs and periodic triggers are registered.
        anchor_delay_s: Delay between a daily digest and its anchor job.
        health: HealthWriter, or None to skip health writes.
    """

    def __init__(
        self,
        store: TelemetryStore,
        aggregator: Aggregator,
        anchors: AnchorCoordinator | None,
        scheduler: Scheduler,
        *,
        anchor_delay_s: float = 5.0,
        health: HealthWriter | None = None,
    ) -> None:
        self._store = store
        self._aggregator = aggregator
        self._anchors = anchors
        self._scheduler = scheduler
        self._anchor_delay_s = anchor_delay_s
        self._health = health

    def register(self, hourly: HourlyTrigger, daily: DailyTrigger) -> None:
        """Register the hourly and daily runs with the scheduler."""
        self._scheduler.register_periodic("hourly", hourly, self._on_hourly)
        self._scheduler.register_periodic("daily", daily, self._on_daily)

    # ------------------------------------------------------------------
    # Periodic runs
    # ------------------------------------------------------------------

    async def _on_hourly(self, fired_at: datetime) -> BatchReport:
        return await self.run_hourly(floor_hour(fired_at) - _ONE_HOUR)

    async def _on_daily(self, fired_at: datetime) -> BatchReport:
        return await self.run_daily(fired_at.astimezone(UTC).date() - _ONE_DAY)

    async def run_hourly(self, hour_start: datetime) -> BatchReport:
        """Aggregate one hour for every configured site, one site at a time."""
        hour_utc = floor_hour(hour_start)
        report = BatchReport(job="hourly", period=hour_utc.isoformat())

        for site in await self._store.list_sites():
            try:
                summary = await self._aggregator.aggregate_hourly(site.site_id, hour_utc)
            except Exception as exc:
                self._record_failure(report, exc, site.site_id)
                continue
            if summary is None:
                report.empty.append(site.site_id)
            else:
                report.succeeded.append(site.site_id)

        self._finish(report)
        if self._health is not None:
            self._health.record_hourly()
        return report

    async def run_daily(self, day: date) -> BatchReport:
        """Aggregate one day for every configured site and schedule anchors."""
        report = BatchReport(job="daily", period=day.isoformat())

        for site in await self._store.list_sites():
            try:
                digest = await self._aggregator.aggregate_daily(site.site_id, day)
            except Exception as exc:
                self._record_failure(report, exc, site.site_id)
                continue
            if digest is None:
                report.empty.append(site.site_id)
                continue
            report.succeeded.append(site.site_id)
            self._maybe_schedule_anchor(digest)

        self._finish(report)
        if self._health is not None:
            self._health.record_daily()
        return report

    # ------------------------------------------------------------------
    # On-demand operations
    # ------------------------------------------------------------------

    async def recompute(
        self, site_id: str, day: date, *, anchor: bool = False
    ) -> DailyDigest | None:
        """Rebuild every hourly summary and the digest of (site, day).

        Args:
            anchor: Schedule an anchor job for the rebuilt digest.

        Raises:
            SiteNotFoundError: If the site is not configured. Checked before
                any hourly summary is written.
        """
        if await self._store.get_site(site_id) is None:
            raise SiteNotFoundError(
                f"site '{site_id}' is not configured", site_id=site_id, period=day.isoformat()
            )
        start = datetime(day.year, day.month, day.day, tzinfo=UTC)
        for offset in range(24):
            await self._aggregator.aggregate_hourly(site_id, start + offset * _ONE_HOUR)
        digest = await self._aggregator.aggregate_daily(site_id, day)
        if digest is not None and anchor:
            self._maybe_schedule_anchor(digest)
        return digest

    async def backfill(self, site_id: str, start: date, end: date) -> BatchReport:
        """Recompute every day from *start* to *end* inclusive.

        Each day is isolated: a failing day is reported and the run continues.
        ``succeeded`` and ``empty`` list days rather than sites.

        Raises:
            ValueError: If *end* is before *start*.
        """
        if end < start:
            raise ValueError(f"backfill end {end} is before start {start}")
        report = BatchReport(job="backfill", period=f"{start.isoformat()}..{end.isoformat()}")

        day = start
        while day <= end:
            try:
                digest = await self.recompute(site_id, day)
            except Exception as exc:
                self._record_failure(report, exc, site_id, period=day.isoformat())
            else:
                (report.succeeded if digest is not None else report.empty).append(day.isoformat())
            day += _ONE_DAY

        self._finish(report)
        return report

    async def purge(self, site_id: str, day: date) -> PurgeSummary:
        """Delete a site-day's records and derived summaries for rebuilding."""
        summary = await self._store.purge_day(site_id, day)
        logger.warning(
            "Purged %s %s: %d records, %d hourly summaries, digest %s",
            site_id,
            day.isoformat(),
            summary.records,
            summary.hourly,
            "kept (anchored)" if summary.digest_retained else (
                "deleted" if summary.digest_deleted else "absent"
            ),
            extra={"site_id": site_id, "period": day.isoformat()},
        )
        return summary

    # ------------------------------------------------------------------
    # Anchoring
    # ------------------------------------------------------------------

    def _maybe_schedule_anchor(self, digest: DailyDigest) -> None:
        if self._anchors is None or not self._anchors.enabled or digest.anchored:
            return
        site_id, day = digest.site_id, digest.day

        async def job() -> AnchorResult | None:
            return await self.anchor_job(site_id, day)

        self._scheduler.submit(f"anchor:{site_id}:{day.isoformat()}", job, self._anchor_delay_s)
        logger.info(
            "Scheduled anchor for %s %s in %.1fs",
            site_id,
            day.isoformat(),
            self._anchor_delay_s,
            extra={"site_id": site_id, "period": day.isoformat()},
        )

    async def anchor_job(self, site_id: str, day: date) -> AnchorResult | None:
        """Anchor one digest and record the outcome; never raises."""
        assert self._anchors is not None
        period = day.isoformat()
        log_extra = {"site_id": site_id, "period": period}
        try:
            result = await self._anchors.anchor(site_id, day)
        except Exception as exc:
            failure = FailureReport.from_error(exc, site_id=site_id, period=period)
            log_extra["correlation_id"] = failure.correlation_id
            logger.error(
                "Anchor job %s %s failed: %s", site_id, period, failure.message, extra=log_extra
            )
            if self._health is not None:
                self._health.record_failures()
            return None

        if result.success:
            if self._health is not None and not result.already_anchored:
                self._health.record_anchor()
        elif result.error_kind is not AnchorErrorKind.DISABLED:
            log_extra["correlation_id"] = result.correlation_id
            logger.error(
                "Anchor job %s %s gave up after %d attempt(s): %s",
                site_id,
                period,
                result.attempts,
                result.error,
                extra=log_extra,
            )
            if self._health is not None:
                self._health.record_failures()
        return result

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _record_failure(
        self,
        report: BatchReport,
        exc: Exception,
        site_id: str,
        period: str | None = None,
    ) -> None:
        failure = FailureReport.from_error(exc, site_id=site_id, period=period or report.period)
        report.failed.append(failure)
        logger.error(
            "%s run failed for %s: %s",
            report.job,
            site_id,
            failure.message,
            exc_info=exc,
            extra={
                "site_id": site_id,
                "period": failure.period,
                "correlation_id": failure.correlation_id,
            },
        )

    def _finish(self, report: BatchReport) -> None:
        logger.info(
            "%s run %s: %d succeeded, %d empty, %d failed",
            report.job,
            report.period,
            len(report.succeeded),
            len(report.empty),
            len(report.failed),
        )
        if report.failed and self._health is not None:
            self._health.record_failures(len(report.failed))
