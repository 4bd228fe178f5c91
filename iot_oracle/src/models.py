"""
Pydantic models for readings, derived summaries, proofs and anchor results.

RawReading is what ingestion collaborators hand to the normalizer.
NormalizedRecord is the persisted, hashed form keyed by (site, instant).
HourlySummary and DailyDigest are the derived period records; the digest
carries the Merkle root and anchor state. Proof/ProofStep describe a Merkle
inclusion path with explicit sibling positions.

Everything printed for collaborators (digests, summaries, proofs, anchor
results and reports) derives from ExposedModel, which serializes camelCase
keys with ``model_dump(by_alias=True)``; unit suffixes keep their spelling
(``energyKWh``, ``avoidedTCO2e``). Field names stay snake_case for
validation and storage.

CHANGELOG:
- 2026-10-19: Add ExposedModel camelCase output and AnchorStatus (STORY-122)
- 2026-10-06: Add ValidationReport and TodayPreview (STORY-114)
- 2026-10-04: Add AnchorReceipt/AnchorResult (STORY-107)
- 2026-10-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from pydantic import AliasGenerator, BaseModel, ConfigDict, Field

from iot_oracle.src.errors import OracleError, new_correlation_id

HEX_DIGEST_PATTERN = r"^[0-9a-f]{64}$"

# Unit tokens whose exposed spelling is not plain capitalization.
_UNIT_SPELLINGS = {"kwh": "KWh", "tco2e": "TCO2e"}


def exposed_name(field_name: str) -> str:
    """camelCase key for *field_name*: ``energy_kwh`` -> ``energyKWh``."""
    head, *rest = field_name.split("_")
    return head + "".join(_UNIT_SPELLINGS.get(part, part[:1].upper() + part[1:]) for part in rest)


class ExposedModel(BaseModel):
    """Base for models printed to collaborators; dumps camelCase by alias."""

    model_config = ConfigDict(alias_generator=AliasGenerator(serialization_alias=exposed_name))


class ReadingStatus(str, Enum):
    """Operating status reported alongside a reading."""

    OK = "OK"
    OUTAGE = "OUTAGE"
    CURTAILED = "CURTAILED"


class ReadingSource(str, Enum):
    """Transport that delivered a reading. Never part of the row hash."""

    MQTT = "mqtt"
    HTTP = "http"
    PULL = "pull"


class RawReading(BaseModel):
    """A shape-valid reading as delivered by an ingestion transport.

    Attributes:
        site_id: Site identifier.
        ts_utc: ISO-8601 instant (string) or timezone-aware datetime.
        poa_irr_wm2: Plane-of-array irradiance in W/m².
        temp_c: Ambient/module temperature in °C.
        wind_mps: Wind speed in m/s.
        ac_power_kw: AC output power in kW.
        ac_energy_kwh: AC energy produced in the interval, kWh.
        status: Operating status, if reported.
        source: Delivering transport.
        uniq_key: Optional transport-level dedupe key.
    """

    site_id: str
    ts_utc: str | datetime
    poa_irr_wm2: float | None = None
    temp_c: float | None = None
    wind_mps: float | None = None
    ac_power_kw: float | None = None
    ac_energy_kwh: float | None = None
    status: ReadingStatus | None = None
    source: ReadingSource = ReadingSource.HTTP
    uniq_key: str | None = None


class NormalizedRecord(BaseModel):
    """A clamped, rounded and hashed reading. Identity: (site_id, ts_utc)."""

    model_config = ConfigDict(frozen=True)

    site_id: str
    ts_utc: datetime
    poa_irr_wm2: float | None = None
    temp_c: float | None = None
    wind_mps: float | None = None
    ac_power_kw: float | None = None
    ac_energy_kwh: float | None = None
    status: ReadingStatus | None = None
    source: ReadingSource
    uniq_key: str | None = None
    row_hash: str = Field(pattern=HEX_DIGEST_PATTERN)


class HourlySummary(ExposedModel):
    """Roll-up of one UTC hour for one site.

    Averages and the maximum ignore absent values; they are ``None`` when no
    record in the hour carried that metric.
    """

    site_id: str
    hour_utc: datetime
    energy_kwh: float
    max_power_kw: float | None = None
    avg_temp_c: float | None = None
    avg_irr_wm2: float | None = None
    row_count: int


class DailyDigest(ExposedModel):
    """Tamper-evident summary of one UTC day for one site."""

    site_id: str
    day: date
    energy_kwh: float
    avoided_tco2e: float
    row_count: int
    merkle_root: str = Field(pattern=HEX_DIGEST_PATTERN)
    anchored: bool = False
    adapter_tx_id: str | None = None
    chain_tx_hash: str | None = None
    artifact_uri: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def topic(self) -> str:
        """Anchor topic ``IOT:{site}:{YYYY-MM-DD}``."""
        return f"IOT:{self.site_id}:{self.day.isoformat()}"


class Site(ExposedModel):
    """A configured production site.

    Attributes:
        site_id: Identifier used in readings and topics.
        name: Display name.
        country: Display country.
        timezone: IANA timezone (display only; all periods are UTC).
        baseline_kg_per_kwh: Grid baseline emission factor, kg CO2 per kWh.
    """

    site_id: str = Field(min_length=1)
    name: str = ""
    country: str = ""
    timezone: str = "UTC"
    baseline_kg_per_kwh: float = Field(gt=0)


class ProofPosition(str, Enum):
    """Side on which a sibling sits when it is combined with the running hash."""

    LEFT = "left"
    RIGHT = "right"


class ProofStep(ExposedModel):
    """One level of a Merkle inclusion path."""

    model_config = ConfigDict(frozen=True)

    sibling: str
    position: ProofPosition


class Proof(ExposedModel):
    """Inclusion proof for one row hash under a day's root."""

    included: bool
    leaf_hash: str | None = None
    branch: list[ProofStep] = Field(default_factory=list)
    root: str


class AnchorReceipt(BaseModel):
    """Reply of the anchoring service to a submission."""

    model_config = ConfigDict(populate_by_name=True)

    adapter_tx_id: str = Field(alias="adapterTxId")
    tx_hash: str = Field(alias="txHash")


class AnchorErrorKind(str, Enum):
    """Classification of an unsuccessful anchor attempt."""

    CONFIG = "config"
    TRANSPORT = "transport"
    RESPONSE = "response"
    DISABLED = "disabled"


class AnchorResult(ExposedModel):
    """Outcome of AnchorCoordinator.anchor()."""

    success: bool
    already_anchored: bool = False
    adapter_tx_id: str | None = None
    chain_tx_hash: str | None = None
    error_kind: AnchorErrorKind | None = None
    error: str | None = None
    attempts: int = 0
    correlation_id: str = Field(default_factory=new_correlation_id)


class AnchorStatus(ExposedModel):
    """Confirmation state of a digest's anchor.

    ``confirmed`` is False and ``chain_tx_hash`` is None while the digest has
    not been anchored; the service is only asked once it has.
    """

    site_id: str
    day: date
    anchored: bool
    chain_tx_hash: str | None = None
    confirmed: bool = False


class FailureReport(ExposedModel):
    """A failure surfaced by a batch operation."""

    site_id: str | None = None
    period: str | None = None
    correlation_id: str
    kind: str
    message: str

    @classmethod
    def from_error(
        cls,
        exc: BaseException,
        *,
        site_id: str | None = None,
        period: str | None = None,
        correlation_id: str | None = None,
    ) -> FailureReport:
        """Build a report from any exception, preferring OracleError context."""
        if isinstance(exc, OracleError):
            return cls(
                site_id=exc.site_id or site_id,
                period=exc.period or period,
                correlation_id=exc.correlation_id,
                kind=exc.kind,
                message=exc.message,
            )
        return cls(
            site_id=site_id,
            period=period,
            correlation_id=correlation_id or new_correlation_id(),
            kind="internal",
            message=f"{type(exc).__name__}: {exc}",
        )


class IngestResult(BaseModel):
    """Result of a batch ingestion: accepted records and rejected readings."""

    accepted: list[NormalizedRecord] = Field(default_factory=list)
    rejected: list[FailureReport] = Field(default_factory=list)


class BatchReport(ExposedModel):
    """Per-site outcome of a scheduled or backfill run."""

    job: str
    period: str
    succeeded: list[str] = Field(default_factory=list)
    empty: list[str] = Field(default_factory=list)
    failed: list[FailureReport] = Field(default_factory=list)


class ValidationReport(ExposedModel):
    """Comparison of a stored digest against a fresh recomputation."""

    site_id: str
    day: date
    stored_root: str
    recomputed_root: str
    stored_energy_kwh: float
    recomputed_energy_kwh: float
    stored_avoided_tco2e: float
    recomputed_avoided_tco2e: float
    row_count: int
    root_match: bool
    energy_match: bool
    avoided_match: bool

    @property
    def is_valid(self) -> bool:
        """True when root, energy and avoided emissions all match."""
        return self.root_match and self.energy_match and self.avoided_match


class TodayPreview(ExposedModel):
    """Running totals for the current UTC day plus the last anchored day."""

    site_id: str
    energy_kwh: float
    avoided_tco2e: float
    row_count: int
    last_anchor_day: date | None = None
    last_anchor_tx_hash: str | None = None
