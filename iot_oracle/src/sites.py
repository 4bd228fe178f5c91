"""
Site registry loading.

Sites are administrative configuration: a JSON file holding a list of
entries such as::

    [
      {"site_id": "PRJ001", "name": "Solar Farm Alpha", "country": "India",
       "timezone": "Asia/Kolkata", "baseline_kg_per_kwh": 0.708}
    ]

``id`` and ``baselineKgPerKWh`` are accepted as alternative keys. An entry
without a factor gets DEFAULT_BASELINE_FACTOR_KG_PER_KWH. Loaded sites are
upserted into the store, which is what the aggregator reads.

CHANGELOG:
- 2026-10-05: Initial creation (STORY-111)

TODO:
- None
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, ValidationError

from iot_oracle.src.errors import ConfigurationError
from iot_oracle.src.models import Site
from iot_oracle.src.store import TelemetryStore

logger = logging.getLogger(__name__)

DEFAULT_SITES: tuple[Site, ...] = (
    Site(
        site_id="PRJ001",
        name="Solar Farm Alpha",
        country="India",
        timezone="Asia/Kolkata",
        baseline_kg_per_kwh=0.708,
    ),
    Site(
        site_id="PRJ002",
        name="Wind Farm Beta",
        country="Germany",
        timezone="Europe/Berlin",
        baseline_kg_per_kwh=0.485,
    ),
)


class SiteEntry(BaseModel):
    """One entry of a sites file; the factor is optional."""

    site_id: str = Field(min_length=1, validation_alias=AliasChoices("site_id", "id"))
    name: str = ""
    country: str = ""
    timezone: str = "UTC"
    baseline_kg_per_kwh: float | None = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("baseline_kg_per_kwh", "baselineKgPerKWh"),
    )

    def to_site(self, default_baseline: float) -> Site:
        """Resolve into a Site, applying *default_baseline* when unset."""
        return Site(
            site_id=self.site_id,
            name=self.name,
            country=self.country,
            timezone=self.timezone,
            baseline_kg_per_kwh=self.baseline_kg_per_kwh or default_baseline,
        )


_SITE_LIST = TypeAdapter(list[SiteEntry])


def parse_sites(text: str, default_baseline: float) -> list[Site]:
    """Parse a JSON site list.

    Raises:
        ConfigurationError: If the JSON is malformed, an entry is invalid, or
            a site id appears twice.
    """
    try:
        entries = _SITE_LIST.validate_json(text)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid sites file: {exc}") from exc

    sites = [entry.to_site(default_baseline) for entry in entries]
    seen: set[str] = set()
    for site in sites:
        if site.site_id in seen:
            raise ConfigurationError(f"duplicate site id '{site.site_id}' in sites file")
        seen.add(site.site_id)
    return sites


def load_sites_file(path: str | Path, default_baseline: float) -> list[Site]:
    """Read and parse the sites file at *path*.

    Raises:
        ConfigurationError: If the file cannot be read or parsed.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"cannot read sites file '{path}': {exc}") from exc
    return parse_sites(text, default_baseline)


async def sync_sites(store: TelemetryStore, sites: list[Site] | tuple[Site, ...]) -> int:
    """Upsert *sites* into the store and return how many were written."""
    for site in sites:
        await store.upsert_site(site)
        logger.info(
            "Configured site %s (%s, baseline %.3f kg/kWh)",
            site.site_id,
            site.name or "unnamed",
            site.baseline_kg_per_kwh,
        )
    return len(sites)
