"""
Tests for the administration CLI.

Commands run against a real SQLite file under tmp_path; the anchoring
service is never contacted (anchoring stays disabled or is patched).

CHANGELOG:
- 2026-10-19: Cover camelCase output and anchor confirmation (STORY-122)
- 2026-10-07: Cover ingest and preview (STORY-115)
- 2026-10-06: Initial creation (STORY-114)

TODO:
- None
"""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from iot_oracle.src.cli import build_parser, main, run
from iot_oracle.src.config import OracleSettings
from iot_oracle.src.models import AnchorReceipt


def _settings(tmp_path: Path, **overrides: object) -> OracleSettings:
    return OracleSettings(database_path=str(tmp_path / "cli.db"), **overrides)


async def _invoke(
    capsys: pytest.CaptureFixture[str], settings: OracleSettings, *argv: str
) -> tuple[int, dict]:
    code = await run(build_parser().parse_args(list(argv)), settings)
    return code, json.loads(capsys.readouterr().out)


def _readings_file(tmp_path: Path) -> Path:
    path = tmp_path / "readings.json"
    path.write_text(
        json.dumps(
            [
                {
                    "site_id": "PRJ001",
                    "ts_utc": f"2024-01-15T{hour}:00:00Z",
                    "ac_energy_kwh": 1.5,
                }
                for hour in (10, 11, 12, 13)
            ]
        )
    )
    return path


class TestParser:
    """Argument parsing."""

    def test_day_is_parsed(self) -> None:
        args = build_parser().parse_args(["recompute", "PRJ001", "2024-01-15", "--anchor"])
        assert args.day.isoformat() == "2024-01-15"
        assert args.anchor is True

    def test_bad_day_exits(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["validate", "PRJ001", "15/01/2024"])

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestCommands:
    """End-to-end command runs."""

    @pytest.mark.asyncio
    async def test_reference_scenario(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        settings = _settings(tmp_path)

        code, payload = await _invoke(capsys, settings, "sites", "--defaults")
        assert code == 0
        assert [s["siteId"] for s in payload["sites"]] == ["PRJ001", "PRJ002"]

        code, payload = await _invoke(capsys, settings, "ingest", str(_readings_file(tmp_path)))
        assert code == 0
        assert payload == {"accepted": 4, "rejected": []}

        code, payload = await _invoke(capsys, settings, "recompute", "PRJ001", "2024-01-15")
        assert code == 0
        assert payload["digest"]["energyKWh"] == pytest.approx(6.0)
        assert payload["digest"]["avoidedTCO2e"] == pytest.approx(0.004248)

        code, payload = await _invoke(capsys, settings, "validate", "PRJ001", "2024-01-15")
        assert code == 0
        assert payload["valid"] is True

        code, payload = await _invoke(
            capsys, settings, "proof", "PRJ001", "2024-01-15", "2024-01-15T12:00:00Z"
        )
        assert code == 0
        assert payload["included"] is True

    @pytest.mark.asyncio
    async def test_exposed_shapes_use_camel_case(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        settings = _settings(tmp_path)
        await _invoke(capsys, settings, "sites", "--defaults")
        await _invoke(capsys, settings, "ingest", str(_readings_file(tmp_path)))

        _, payload = await _invoke(capsys, settings, "recompute", "PRJ001", "2024-01-15")
        digest = payload["digest"]
        assert {
            "siteId",
            "day",
            "energyKWh",
            "avoidedTCO2e",
            "rowCount",
            "merkleRoot",
            "anchored",
            "adapterTxId",
            "chainTxHash",
        } <= set(digest)
        assert "merkle_root" not in digest

        _, proof = await _invoke(
            capsys, settings, "proof", "PRJ001", "2024-01-15", "2024-01-15T12:00:00Z"
        )
        assert set(proof) == {"included", "leafHash", "branch", "root"}
        assert proof["root"] == digest["merkleRoot"]
        assert set(proof["branch"][0]) == {"sibling", "position"}

    @pytest.mark.asyncio
    async def test_unknown_site_is_config_error(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        code, payload = await _invoke(
            capsys, _settings(tmp_path), "recompute", "NOPE", "2024-01-15"
        )

        assert code == 1
        assert payload["error"] == "config"
        assert payload["siteId"] == "NOPE"
        assert payload["correlationId"]

    @pytest.mark.asyncio
    async def test_missing_digest_is_not_found(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        code, payload = await _invoke(
            capsys, _settings(tmp_path), "validate", "PRJ001", "2024-01-15"
        )

        assert code == 1
        assert payload["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_reversed_backfill_is_invalid_argument(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        code, payload = await _invoke(
            capsys, _settings(tmp_path), "backfill", "PRJ001", "2024-01-16", "2024-01-15"
        )

        assert code == 1
        assert payload["error"] == "invalid_argument"

    @pytest.mark.asyncio
    async def test_anchor_disabled_fails(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        settings = _settings(tmp_path)
        await _invoke(capsys, settings, "sites", "--defaults")
        await _invoke(capsys, settings, "ingest", str(_readings_file(tmp_path)))
        await _invoke(capsys, settings, "recompute", "PRJ001", "2024-01-15")

        code, payload = await _invoke(capsys, settings, "anchor", "PRJ001", "2024-01-15")

        assert code == 1
        assert payload["errorKind"] == "disabled"

    @pytest.mark.asyncio
    async def test_anchor_and_status(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        settings = _settings(
            tmp_path,
            anchor_enabled=True,
            adapter_api_url="https://adapter.example.com",
            adapter_api_key="k",
        )
        await _invoke(capsys, settings, "sites", "--defaults")
        await _invoke(capsys, settings, "ingest", str(_readings_file(tmp_path)))
        await _invoke(capsys, settings, "recompute", "PRJ001", "2024-01-15")

        receipt = AnchorReceipt(adapter_tx_id="ad-1", tx_hash="0xabc")
        submit = AsyncMock(return_value=receipt)
        status = AsyncMock(return_value="confirmed")
        with (
            patch("iot_oracle.src.anchor_client.AnchorClient.submit", submit),
            patch("iot_oracle.src.anchor_client.AnchorClient.status", status),
        ):
            code, payload = await _invoke(capsys, settings, "anchor", "PRJ001", "2024-01-15")
            assert code == 0
            assert payload["chainTxHash"] == "0xabc"

            code, payload = await _invoke(capsys, settings, "anchor", "PRJ001", "2024-01-15")
            assert payload["alreadyAnchored"] is True

            code, payload = await _invoke(
                capsys, settings, "anchor", "PRJ001", "2024-01-15", "--status"
            )
            assert payload["confirmed"] is True

        assert submit.await_count == 1

    @pytest.mark.asyncio
    async def test_purge_with_rebuild(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        settings = _settings(tmp_path)
        await _invoke(capsys, settings, "sites", "--defaults")
        await _invoke(capsys, settings, "ingest", str(_readings_file(tmp_path)))
        await _invoke(capsys, settings, "recompute", "PRJ001", "2024-01-15")

        code, payload = await _invoke(
            capsys, settings, "purge", "PRJ001", "2024-01-15", "--rebuild"
        )

        assert code == 0
        assert payload["records"] == 4
        assert payload["digestDeleted"] is True
        assert payload["digest"] is None

    @pytest.mark.asyncio
    async def test_ingest_reports_rejections(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        path = tmp_path / "bad.json"
        path.write_text('[{"site_id": "PRJ001", "ts_utc": "yesterday"}]')

        code, payload = await _invoke(capsys, _settings(tmp_path), "ingest", str(path))

        assert code == 1
        assert payload["accepted"] == 0
        assert payload["rejected"][0]["kind"] == "validation"

    @pytest.mark.asyncio
    async def test_preview_today(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        settings = _settings(tmp_path)
        await _invoke(capsys, settings, "sites", "--defaults")

        code, payload = await _invoke(capsys, settings, "preview", "PRJ002")

        assert code == 0
        assert payload["siteId"] == "PRJ002"
        assert payload["energyKWh"] == 0.0
        assert payload["lastAnchorDay"] is None

    @pytest.mark.asyncio
    async def test_sites_from_file(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        sites = tmp_path / "sites.json"
        sites.write_text('[{"id": "PRJ010"}]')

        code, payload = await _invoke(
            capsys, _settings(tmp_path), "sites", "--file", str(sites)
        )

        assert code == 0
        assert payload["sites"][0]["siteId"] == "PRJ010"
        assert payload["sites"][0]["baselineKgPerKWh"] == 0.82


class TestMain:
    """Synchronous entrypoint."""

    def test_main_returns_exit_code(
        self,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "main.db"))

        with patch("iot_oracle.src.cli.configure_logging"):
            code = main(["sites", "--defaults"])

        assert code == 0
        assert len(json.loads(capsys.readouterr().out)["sites"]) == 2
