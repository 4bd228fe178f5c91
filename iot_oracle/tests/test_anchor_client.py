"""
Unit tests for the anchoring service HTTPS client.

Tests verify:
- The client rejects non-HTTPS base URLs at construction.
- submit() POSTs {topic, hash, uri?} to /v1/anchor with Bearer auth.
- 2xx replies are parsed into an AnchorReceipt.
- Network errors map to AnchorTransportError; non-2xx and malformed replies
  map to AnchorResponseError with the status code.
- status() GETs /v1/anchor/{txHash} and returns the reported status.
- TLS verification is always enabled.

CHANGELOG:
- 2026-10-06: Cover status() (STORY-114)
- 2026-10-04: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from iot_oracle.src.anchor_client import AnchorClient
from iot_oracle.src.errors import AnchorResponseError, AnchorTransportError

_BASE = "https://adapter.example.com"
_ROOT = "ab" * 32


def _mock_client(response: MagicMock | None = None, error: Exception | None = None) -> AsyncMock:
    """Return an AsyncMock usable as ``async with httpx.AsyncClient(...)``."""
    client = AsyncMock()
    if error is not None:
        client.post = AsyncMock(side_effect=error)
        client.get = AsyncMock(side_effect=error)
    else:
        client.post = AsyncMock(return_value=response)
        client.get = AsyncMock(return_value=response)
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


def _response(status_code: int, payload: object = None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


class TestHTTPSValidation:
    """Client rejects non-HTTPS URLs at construction."""

    def test_http_url_rejected(self) -> None:
        with pytest.raises(ValueError, match="HTTPS"):
            AnchorClient("http://adapter.example.com", api_key="k")

    def test_trailing_slash_stripped(self) -> None:
        assert AnchorClient(f"{_BASE}/", api_key="k")._base_url == _BASE


class TestSubmit:
    """submit() posts the anchor payload and parses the receipt."""

    @pytest.mark.asyncio
    async def test_posts_payload_with_bearer(self) -> None:
        client = _mock_client(_response(200, {"adapterTxId": "ad-1", "txHash": "0xabc"}))

        with patch("iot_oracle.src.anchor_client.httpx.AsyncClient", return_value=client) as cls:
            receipt = await AnchorClient(_BASE, api_key="secret").submit(
                "IOT:PRJ001:2024-01-15", _ROOT, "ipfs://cid"
            )

        assert receipt.adapter_tx_id == "ad-1"
        assert receipt.tx_hash == "0xabc"
        call_args = client.post.call_args
        assert call_args[0][0] == f"{_BASE}/v1/anchor"
        assert call_args[1]["json"] == {
            "topic": "IOT:PRJ001:2024-01-15",
            "hash": _ROOT,
            "uri": "ipfs://cid",
        }
        assert call_args[1]["headers"]["Authorization"] == "Bearer secret"
        assert cls.call_args[1]["verify"] is True

    @pytest.mark.asyncio
    async def test_uri_omitted_when_absent(self) -> None:
        client = _mock_client(_response(201, {"adapterTxId": "ad-1", "txHash": "0xabc"}))

        with patch("iot_oracle.src.anchor_client.httpx.AsyncClient", return_value=client):
            await AnchorClient(_BASE, api_key="k").submit("IOT:PRJ001:2024-01-15", _ROOT)

        assert "uri" not in client.post.call_args[1]["json"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [httpx.ConnectError("refused"), httpx.ReadTimeout("slow")],
    )
    async def test_network_error_is_transport_error(self, error: Exception) -> None:
        client = _mock_client(error=error)

        with patch("iot_oracle.src.anchor_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(AnchorTransportError):
                await AnchorClient(_BASE, api_key="k").submit("IOT:PRJ001:2024-01-15", _ROOT)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 401, 429, 500, 503])
    async def test_non_2xx_is_response_error(self, status_code: int) -> None:
        client = _mock_client(_response(status_code, {"error": "nope"}))

        with patch("iot_oracle.src.anchor_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(AnchorResponseError) as exc_info:
                await AnchorClient(_BASE, api_key="k").submit("IOT:PRJ001:2024-01-15", _ROOT)

        assert exc_info.value.status_code == status_code

    @pytest.mark.asyncio
    async def test_malformed_reply_is_response_error(self) -> None:
        client = _mock_client(_response(200, {"unexpected": True}))

        with patch("iot_oracle.src.anchor_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(AnchorResponseError, match="malformed"):
                await AnchorClient(_BASE, api_key="k").submit("IOT:PRJ001:2024-01-15", _ROOT)

    @pytest.mark.asyncio
    async def test_non_json_reply_is_response_error(self) -> None:
        client = _mock_client(_response(200, ValueError("not json")))

        with patch("iot_oracle.src.anchor_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(AnchorResponseError):
                await AnchorClient(_BASE, api_key="k").submit("IOT:PRJ001:2024-01-15", _ROOT)


class TestStatus:
    """status() reads the anchoring service's status for a transaction."""

    @pytest.mark.asyncio
    async def test_confirmed(self) -> None:
        client = _mock_client(_response(200, {"status": "confirmed"}))

        with patch("iot_oracle.src.anchor_client.httpx.AsyncClient", return_value=client):
            anchor_client = AnchorClient(_BASE, api_key="k")
            assert await anchor_client.status("0xabc") == "confirmed"
            assert await anchor_client.is_confirmed("0xabc") is True

        assert client.get.call_args[0][0] == f"{_BASE}/v1/anchor/0xabc"

    @pytest.mark.asyncio
    async def test_pending_not_confirmed(self) -> None:
        client = _mock_client(_response(200, {"status": "pending"}))

        with patch("iot_oracle.src.anchor_client.httpx.AsyncClient", return_value=client):
            assert await AnchorClient(_BASE, api_key="k").is_confirmed("0xabc") is False

    @pytest.mark.asyncio
    async def test_missing_status_field(self) -> None:
        client = _mock_client(_response(200, {}))

        with patch("iot_oracle.src.anchor_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(AnchorResponseError, match="malformed"):
                await AnchorClient(_BASE, api_key="k").status("0xabc")

    @pytest.mark.asyncio
    async def test_not_found(self) -> None:
        client = _mock_client(_response(404))

        with patch("iot_oracle.src.anchor_client.httpx.AsyncClient", return_value=client):
            with pytest.raises(AnchorResponseError) as exc_info:
                await AnchorClient(_BASE, api_key="k").status("0xabc")

        assert exc_info.value.status_code == 404
