"""
HTTPS client for the external anchoring service.

Operations:
- submit(topic, digest_hash, uri): POST ``{base_url}/v1/anchor`` with Bearer
  authentication and body ``{"topic", "hash", "uri"?}``; returns the
  ``{adapterTxId, txHash}`` reply as an AnchorReceipt.
- status(tx_hash): GET ``{base_url}/v1/anchor/{tx_hash}``; returns the
  reported status string (``"confirmed"`` once final).
- is_confirmed(tx_hash): True when status() reports ``"confirmed"``; this is
  what AnchorCoordinator.check_status relies on.

The client performs exactly one request per call and never retries; the
AnchorCoordinator owns the retry policy. Failures are mapped onto the error
taxonomy:

- connect errors and timeouts -> AnchorTransportError
- non-2xx status or malformed reply -> AnchorResponseError(status_code)

The base URL must use HTTPS and TLS certificate verification is always on.

CHANGELOG:
- 2026-10-06: Add status() lookup (STORY-114)
- 2026-10-04: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import logging

import httpx

from iot_oracle.src.errors import AnchorResponseError, AnchorTransportError
from iot_oracle.src.models import AnchorReceipt

logger = logging.getLogger(__name__)

CONFIRMED_STATUS = "confirmed"
_DEFAULT_TIMEOUT_S = 10.0


class AnchorClient:
    """Thin HTTPS wrapper around the anchoring service.

    Args:
        base_url: Service base URL. Must start with ``https://``.
        api_key: Bearer key sent in the Authorization header.
        timeout_s: Per-request timeout in seconds.

    Raises:
        ValueError: If *base_url* does not start with ``https://``.

    Usage::

        client = AnchorClient("https://adapter.example.com", api_key="k")
        receipt = await client.submit("IOT:PRJ001:2024-01-15", root)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
    ) -> None:
        if not base_url.lower().startswith("https://"):
            raise ValueError(f"Anchoring service URL must use HTTPS (got: '{base_url}').")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_s = timeout_s

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(
        self,
        topic: str,
        digest_hash: str,
        uri: str | None = None,
    ) -> AnchorReceipt:
        """Submit one digest root for anchoring.

        Args:
            topic: Anchor topic, ``IOT:{site}:{day}``.
            digest_hash: The day's Merkle root.
            uri: Optional artifact URI stored alongside the anchor.

        Returns:
            The service's transaction references.

        Raises:
            AnchorTransportError: On connection failure or timeout.
            AnchorResponseError: On a non-2xx status or malformed reply.
        """
        body: dict[str, str] = {"topic": topic, "hash": digest_hash}
        if uri:
            body["uri"] = uri

        url = f"{self._base_url}/v1/anchor"
        try:
            async with httpx.AsyncClient(verify=True, timeout=self._timeout_s) as client:
                response = await client.post(url, json=body, headers=self._headers())
        except httpx.TransportError as exc:
            raise AnchorTransportError(f"anchor submit failed (network error): {exc}") from exc

        self._raise_for_status(response, "submit")
        try:
            receipt = AnchorReceipt.model_validate(response.json())
        except ValueError as exc:
            raise AnchorResponseError(
                f"anchor submit returned a malformed reply: {exc}",
                status_code=response.status_code,
            ) from exc

        logger.info("Anchored topic %s: tx %s", topic, receipt.tx_hash)
        return receipt

    async def status(self, tx_hash: str) -> str:
        """Return the service's status string for *tx_hash*.

        Raises:
            AnchorTransportError: On connection failure or timeout.
            AnchorResponseError: On a non-2xx status or malformed reply.
        """
        url = f"{self._base_url}/v1/anchor/{tx_hash}"
        try:
            async with httpx.AsyncClient(verify=True, timeout=self._timeout_s) as client:
                response = await client.get(url, headers=self._headers())
        except httpx.TransportError as exc:
            raise AnchorTransportError(f"anchor status failed (network error): {exc}") from exc

        self._raise_for_status(response, "status")
        try:
            payload = response.json()
            status = payload["status"]
        except (ValueError, KeyError, TypeError) as exc:
            raise AnchorResponseError(
                f"anchor status returned a malformed reply: {exc}",
                status_code=response.status_code,
            ) from exc
        return str(status)

    async def is_confirmed(self, tx_hash: str) -> bool:
        """True when the service reports *tx_hash* as confirmed."""
        return await self.status(tx_hash) == CONFIRMED_STATUS

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if 200 <= response.status_code < 300:
            return
        raise AnchorResponseError(
            f"anchor {operation} rejected (HTTP {response.status_code})",
            status_code=response.status_code,
        )
