"""
Tests for the exposed (camelCase) serialization of the pydantic models.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-122)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, date, datetime

from iot_oracle.src.models import (
    AnchorReceipt,
    DailyDigest,
    HourlySummary,
    Proof,
    ProofPosition,
    ProofStep,
    exposed_name,
)

_ROOT = "ab" * 32


class TestExposedName:
    """Field names map onto collaborator-facing keys."""

    def test_plain_camel_case(self) -> None:
        assert exposed_name("site_id") == "siteId"
        assert exposed_name("chain_tx_hash") == "chainTxHash"
        assert exposed_name("avg_irr_wm2") == "avgIrrWm2"
        assert exposed_name("root") == "root"

    def test_unit_spellings(self) -> None:
        assert exposed_name("energy_kwh") == "energyKWh"
        assert exposed_name("avoided_tco2e") == "avoidedTCO2e"
        assert exposed_name("max_power_kw") == "maxPowerKw"


class TestExposedDump:
    """by_alias dumps are camelCase; plain dumps and validation stay snake_case."""

    def test_digest_keys(self) -> None:
        digest = DailyDigest(
            site_id="PRJ001",
            day=date(2024, 1, 15),
            energy_kwh=6.0,
            avoided_tco2e=0.004248,
            row_count=4,
            merkle_root=_ROOT,
        )

        exposed = digest.model_dump(mode="json", by_alias=True)

        assert exposed["siteId"] == "PRJ001"
        assert exposed["energyKWh"] == 6.0
        assert exposed["avoidedTCO2e"] == 0.004248
        assert exposed["merkleRoot"] == _ROOT
        assert "site_id" in digest.model_dump()

    def test_hourly_keys(self) -> None:
        summary = HourlySummary(
            site_id="PRJ001",
            hour_utc=datetime(2024, 1, 15, 10, tzinfo=UTC),
            energy_kwh=1.5,
            row_count=1,
        )

        assert set(summary.model_dump(by_alias=True)) == {
            "siteId",
            "hourUtc",
            "energyKWh",
            "maxPowerKw",
            "avgTempC",
            "avgIrrWm2",
            "rowCount",
        }

    def test_proof_keys(self) -> None:
        proof = Proof(
            included=True,
            leaf_hash=_ROOT,
            branch=[ProofStep(sibling=_ROOT, position=ProofPosition.LEFT)],
            root=_ROOT,
        )

        exposed = proof.model_dump(mode="json", by_alias=True)

        assert exposed["leafHash"] == _ROOT
        assert exposed["branch"] == [{"sibling": _ROOT, "position": "left"}]

    def test_receipt_accepts_wire_and_field_names(self) -> None:
        wire = AnchorReceipt.model_validate({"adapterTxId": "ad-1", "txHash": "0xabc"})
        local = AnchorReceipt(adapter_tx_id="ad-1", tx_hash="0xabc")
        assert wire == local
