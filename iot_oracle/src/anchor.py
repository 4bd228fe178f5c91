"""
Anchor coordinator: retrying, idempotent submission of daily digest roots.

For one (site, day) the coordinator:

1. Refuses early when anchoring is disabled or the service is not configured
   (configuration errors are terminal, never retried).
2. Takes the per-digest lock and re-reads the digest. An already-anchored
   digest returns its stored references without a new submission.
3. Submits ``{topic, hash, uri?}`` with bounded exponential backoff
   (``base_delay_s * 2**n`` between attempts). Transport errors are always
   retried; 5xx and 429 responses are always retried; other 4xx responses
   are retried only when ``retry_client_errors`` is set.
4. Records the receipt with a conditional "still unanchored" update, so two
   racing processes can never both flip the flag.

Exhausted retries leave the digest unanchored and return a failed
AnchorResult; the caller decides what to do with it.

CHANGELOG:
- 2026-10-19: check_status reports confirmation as an AnchorStatus (STORY-122)
- 2026-10-07: Make 4xx retries a policy switch (STORY-116)
- 2026-10-06: Add check_status (STORY-114)
- 2026-10-04: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Protocol

from iot_oracle.src.anchor_client import AnchorClient
from iot_oracle.src.config import OracleSettings
from iot_oracle.src.errors import (
    AnchorConfigError,
    AnchorError,
    AnchorResponseError,
    DigestNotFoundError,
    new_correlation_id,
)
from iot_oracle.src.locks import KeyedLocks, anchor_key
from iot_oracle.src.models import (
    AnchorErrorKind,
    AnchorReceipt,
    AnchorResult,
    AnchorStatus,
    DailyDigest,
)
from iot_oracle.src.store import TelemetryStore

logger = logging.getLogger(__name__)


class AnchorService(Protocol):
    """The subset of :class:`AnchorClient` the coordinator depends on."""

    async def submit(
        self, topic: str, digest_hash: str, uri: str | None = None
    ) -> AnchorReceipt: ...

    async def is_confirmed(self, tx_hash: str) -> bool: ...


class AnchorCoordinator:
    """Anchors daily digests exactly once per (site, day).

    Args:
        store: Telemetry repository holding the digests.
        client: Anchoring service client. ``None`` means the service is not
            configured; every anchor call then fails with a config error.
        locks: Keyed locks shared with the rest of the process.
        enabled: Master switch (``ANCHOR_ENABLED``).
        max_attempts: Total submission attempts per call.
        base_delay_s: First backoff delay; doubles after every failure.
        retry_client_errors: Retry 4xx responses other than 408/429.
    """

    def __init__(
        self,
        store: TelemetryStore,
        client: AnchorService | None,
        locks: KeyedLocks | None = None,
        *,
        enabled: bool = True,
        max_attempts: int = 4,
        base_delay_s: float = 1.0,
        retry_client_errors: bool = True,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._store = store
        self._client = client
        self._locks = locks or KeyedLocks()
        self._enabled = enabled
        self._max_attempts = max_attempts
        self._base_delay_s = base_delay_s
        self._retry_client_errors = retry_client_errors

    @classmethod
    def from_settings(
        cls,
        settings: OracleSettings,
        store: TelemetryStore,
        locks: KeyedLocks | None = None,
    ) -> AnchorCoordinator:
        """Build a coordinator (and its HTTPS client) from settings."""
        client = None
        if settings.anchor_configured:
            client = AnchorClient(
                base_url=settings.adapter_api_url,  # type: ignore[arg-type]
                api_key=settings.adapter_api_key,  # type: ignore[arg-type]
                timeout_s=settings.anchor_timeout_s,
            )
        return cls(
            store,
            client,
            locks,
            enabled=settings.anchor_enabled,
            max_attempts=settings.anchor_max_attempts,
            base_delay_s=settings.anchor_base_delay_s,
            retry_client_errors=settings.anchor_retry_client_errors,
        )

    @property
    def enabled(self) -> bool:
        """True when anchoring is switched on."""
        return self._enabled

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def anchor(self, site_id: str, day: date) -> AnchorResult:
        """Anchor the digest of (*site_id*, *day*).

        Returns:
            The outcome. ``success`` is False when anchoring is disabled,
            unconfigured, or every attempt failed.

        Raises:
            DigestNotFoundError: If no digest exists for (site, day).
            LockTimeoutError: If the per-digest lease cannot be obtained.
        """
        correlation_id = new_correlation_id()
        period = day.isoformat()
        log_extra = {"site_id": site_id, "period": period, "correlation_id": correlation_id}

        if not self._enabled:
            logger.info("Anchoring disabled, skipping %s %s", site_id, period, extra=log_extra)
            return AnchorResult(
                success=False,
                error_kind=AnchorErrorKind.DISABLED,
                error="anchoring is disabled",
                correlation_id=correlation_id,
            )

        if self._client is None:
            error = AnchorConfigError(
                "ADAPTER_API_URL and ADAPTER_API_KEY are required to anchor",
                site_id=site_id,
                period=period,
                correlation_id=correlation_id,
            )
            logger.error("%s", error, extra=log_extra)
            return AnchorResult(
                success=False,
                error_kind=AnchorErrorKind.CONFIG,
                error=error.message,
                correlation_id=correlation_id,
            )

        async with self._locks.hold(anchor_key(site_id, period)):
            digest = await self._store.get_digest(site_id, day)
            if digest is None:
                raise DigestNotFoundError(
                    f"no digest to anchor for {site_id} {period}",
                    site_id=site_id,
                    period=period,
                    correlation_id=correlation_id,
                )
            if digest.anchored:
                logger.info(
                    "Digest %s %s already anchored (tx %s)",
                    site_id,
                    period,
                    digest.chain_tx_hash,
                    extra=log_extra,
                )
                return _already_anchored(digest, correlation_id, attempts=0)

            return await self._submit_with_retry(digest, correlation_id, log_extra)

    async def check_status(self, site_id: str, day: date) -> AnchorStatus:
        """Ask the anchoring service whether a digest's anchor is confirmed.

        An unanchored digest reports ``anchored=False`` without contacting
        the service.

        Raises:
            DigestNotFoundError: If no digest exists for (site, day).
            AnchorConfigError: If the service is not configured.
            AnchorError: If the status lookup fails.
        """
        period = day.isoformat()
        digest = await self._store.get_digest(site_id, day)
        if digest is None:
            raise DigestNotFoundError(
                f"no digest for {site_id} {period}", site_id=site_id, period=period
            )
        if not digest.anchored or not digest.chain_tx_hash:
            return AnchorStatus(site_id=site_id, day=day, anchored=False)
        if self._client is None:
            raise AnchorConfigError(
                "ADAPTER_API_URL and ADAPTER_API_KEY are required to check anchors",
                site_id=site_id,
                period=period,
            )
        confirmed = await self._client.is_confirmed(digest.chain_tx_hash)
        return AnchorStatus(
            site_id=site_id,
            day=day,
            anchored=True,
            chain_tx_hash=digest.chain_tx_hash,
            confirmed=confirmed,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _is_retryable(self, exc: AnchorError) -> bool:
        if isinstance(exc, AnchorResponseError) and exc.is_client_error:
            return self._retry_client_errors
        return True

    async def _submit_with_retry(
        self, digest: DailyDigest, correlation_id: str, log_extra: dict[str, str]
    ) -> AnchorResult:
        assert self._client is not None
        site_id, period = digest.site_id, digest.day.isoformat()

        for attempt in range(1, self._max_attempts + 1):
            try:
                receipt = await self._client.submit(
                    digest.topic, digest.merkle_root, digest.artifact_uri
                )
            except AnchorError as exc:
                retryable = self._is_retryable(exc)
                if not retryable or attempt == self._max_attempts:
                    logger.error(
                        "Anchoring %s %s failed after %d attempt(s): %s",
                        site_id,
                        period,
                        attempt,
                        exc.message,
                        extra=log_extra,
                    )
                    return AnchorResult(
                        success=False,
                        error_kind=_error_kind(exc),
                        error=exc.message,
                        attempts=attempt,
                        correlation_id=correlation_id,
                    )
                delay = self._base_delay_s * 2 ** (attempt - 1)
                logger.warning(
                    "Anchor attempt %d/%d for %s %s failed (%s), retrying in %.1fs",
                    attempt,
                    self._max_attempts,
                    site_id,
                    period,
                    exc.message,
                    delay,
                    extra=log_extra,
                )
                await asyncio.sleep(delay)
                continue

            changed = await self._store.mark_anchored(
                site_id, digest.day, receipt.adapter_tx_id, receipt.tx_hash
            )
            if not changed:
                # Another process flipped the flag between our read and update.
                stored = await self._store.get_digest(site_id, digest.day)
                logger.warning(
                    "Digest %s %s was anchored concurrently, keeping stored tx %s",
                    site_id,
                    period,
                    stored.chain_tx_hash if stored else None,
                    extra=log_extra,
                )
                if stored is None:
                    raise DigestNotFoundError(
                        f"digest {site_id} {period} was removed while anchoring",
                        site_id=site_id,
                        period=period,
                        correlation_id=correlation_id,
                    )
                return _already_anchored(stored, correlation_id, attempts=attempt)

            logger.info(
                "Anchored %s %s on attempt %d: tx %s",
                site_id,
                period,
                attempt,
                receipt.tx_hash,
                extra=log_extra,
            )
            return AnchorResult(
                success=True,
                adapter_tx_id=receipt.adapter_tx_id,
                chain_tx_hash=receipt.tx_hash,
                attempts=attempt,
                correlation_id=correlation_id,
            )

        raise AssertionError("unreachable: attempt loop always returns")


def _error_kind(exc: AnchorError) -> AnchorErrorKind:
    if isinstance(exc, AnchorResponseError):
        return AnchorErrorKind.RESPONSE
    return AnchorErrorKind.TRANSPORT


def _already_anchored(digest: DailyDigest, correlation_id: str, attempts: int) -> AnchorResult:
    return AnchorResult(
        success=True,
        already_anchored=True,
        adapter_tx_id=digest.adapter_tx_id,
        chain_tx_hash=digest.chain_tx_hash,
        attempts=attempts,
        correlation_id=correlation_id,
    )
