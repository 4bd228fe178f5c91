"""
Health file writer for the oracle daemon.

Writes a JSON health file at a configurable path with five fields:
- last_hourly_ts: ISO timestamp of the most recent hourly run.
- last_daily_ts: ISO timestamp of the most recent daily run.
- last_anchor_ts: ISO timestamp of the most recent successful anchor.
- pending_anchors: Number of anchor jobs scheduled or running.
- failed_jobs: Number of per-site job failures since startup.

The file is rewritten on every state change, providing a simple liveness
signal that Docker HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-10-08: Add pending_anchors and failed_jobs (STORY-117)
- 2026-10-05: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes oracle health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_hourly_ts: str | None = None
        self._last_daily_ts: str | None = None
        self._last_anchor_ts: str | None = None
        self._pending_anchors: int = 0
        self._failed_jobs: int = 0

    def record_hourly(self) -> None:
        """Record an hourly run and write health file."""
        self._last_hourly_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def record_daily(self) -> None:
        """Record a daily run and write health file."""
        self._last_daily_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def record_anchor(self) -> None:
        """Record a successful anchor and write health file."""
        self._last_anchor_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def set_pending_anchors(self, count: int) -> None:
        """Update the pending anchor count and write health file.

        Args:
            count: Anchor jobs currently scheduled or running.
        """
        self._pending_anchors = count
        self._write()

    def record_failures(self, count: int = 1) -> None:
        """Add *count* job failures and write health file."""
        self._failed_jobs += count
        self._write()

    def _write(self) -> None:
        """Write the health JSON file with current state."""
        data = {
            "last_hourly_ts": self._last_hourly_ts,
            "last_daily_ts": self._last_daily_ts,
            "last_anchor_ts": self._last_anchor_ts,
            "pending_anchors": self._pending_anchors,
            "failed_jobs": self._failed_jobs,
        }
        self.path.write_text(json.dumps(data))
