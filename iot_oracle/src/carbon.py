"""
Avoided-emissions conversion.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import math

KG_PER_TONNE = 1000.0


def avoided_tco2e(energy_kwh: float, baseline_kg_per_kwh: float) -> float:
    """Convert produced clean energy into avoided emissions.

    Formula: (kWh * baseline kg CO2/kWh) / 1000 = tonnes CO2e

    Args:
        energy_kwh: Energy produced in kilowatt-hours.
        baseline_kg_per_kwh: Site grid baseline factor in kg CO2 per kWh.

    Returns:
        Avoided emissions in metric tonnes CO2e.

    Raises:
        ValueError: If either input is negative or not finite.
    """
    if not math.isfinite(energy_kwh) or energy_kwh < 0:
        raise ValueError(f"energy_kwh must be a finite non-negative number (got {energy_kwh})")
    if not math.isfinite(baseline_kg_per_kwh) or baseline_kg_per_kwh < 0:
        raise ValueError(
            f"baseline_kg_per_kwh must be a finite non-negative number (got {baseline_kg_per_kwh})"
        )
    return energy_kwh * baseline_kg_per_kwh / KG_PER_TONNE
