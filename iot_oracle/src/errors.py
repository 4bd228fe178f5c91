"""
Error taxonomy for the oracle pipeline.

Every error carries the site, the period (hour or day) and a correlation id
so that a failure reported by a batch run or the scheduler can be traced back
to the log lines of the call that produced it.

Categories:
- ReadingValidationError: a single raw reading was rejected (per-record).
- ConfigurationError: program/config defect (unknown site, missing adapter
  credentials). Never retried.
- DigestNotFoundError: an operation needs a digest that was never computed.
- AnchorError: failures talking to the anchoring service. Transport errors
  are retryable; response errors depend on the configured policy.
- LockTimeoutError: a keyed lease could not be acquired in time.

CHANGELOG:
- 2026-10-03: Add LockTimeoutError for Redis-backed leases (STORY-109)
- 2026-10-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

import uuid


def new_correlation_id() -> str:
    """Return a short random correlation id for log/failure traceability."""
    return uuid.uuid4().hex[:12]


class OracleError(Exception):
    """Base class for all oracle errors.

    Args:
        message: Human-readable description.
        site_id: Site the failure relates to, if any.
        period: Hour (ISO) or day (``YYYY-MM-DD``) the failure relates to.
        correlation_id: Id shared with the log records of the failing call.
            Generated when not supplied.
    """

    kind = "internal"

    def __init__(
        self,
        message: str,
        *,
        site_id: str | None = None,
        period: str | None = None,
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.site_id = site_id
        self.period = period
        self.correlation_id = correlation_id or new_correlation_id()

    def __str__(self) -> str:
        context = ", ".join(
            f"{key}={value}"
            for key, value in (
                ("site", self.site_id),
                ("period", self.period),
                ("correlation_id", self.correlation_id),
            )
            if value
        )
        return f"{self.message} ({context})" if context else self.message


class ReadingValidationError(OracleError):
    """A raw reading failed validation (bad instant, empty site, NaN/inf)."""

    kind = "validation"


class ConfigurationError(OracleError):
    """Program or configuration defect; not retryable."""

    kind = "config"


class SiteNotFoundError(ConfigurationError):
    """Aggregation was requested for a site that is not configured."""


class AnchorConfigError(ConfigurationError):
    """Anchoring is enabled but the adapter URL or key is missing."""


class DigestNotFoundError(OracleError):
    """No daily digest exists for the requested (site, day)."""

    kind = "not_found"


class AnchorError(OracleError):
    """Base class for failures talking to the anchoring service."""

    kind = "anchor"


class AnchorTransportError(AnchorError):
    """Network-level failure (connect error, timeout). Always retryable."""

    kind = "transport"


class AnchorResponseError(AnchorError):
    """The anchoring service answered with a non-success status.

    Args:
        status_code: HTTP status returned by the service.
    """

    kind = "response"

    def __init__(self, message: str, *, status_code: int, **context: str | None) -> None:
        super().__init__(message, **context)
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        """True for 4xx statuses other than 408 and 429."""
        return 400 <= self.status_code < 500 and self.status_code not in (408, 429)


class LockTimeoutError(OracleError):
    """A keyed lock/lease could not be acquired within the wait budget."""

    kind = "lock_timeout"
