"""
GridPulse — Canonical schema.

Every provider adapter, whatever its upstream shape, produces these models.
Derived fields are computed here rather than by callers so that the
invariants hold for every snapshot:

  * market_conditions is a pure function of current_price and the provider
    baseline; it cannot be set directly.
  * peak_forecast_mw >= current_demand_mw.
  * total_generation_mw == sum(fuel_mix) and renewable_percentage ==
    100 * (wind + solar + hydro + biomass) / total.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

LOW_PRICE_RATIO  = 0.6     # below baseline * ratio -> "low"
HIGH_PRICE_RATIO = 1.5     # above baseline * ratio -> "high"

FUEL_TYPES       = ("gas", "wind", "solar", "hydro", "nuclear", "coal", "biomass", "other")
RENEWABLE_FUELS  = {"wind", "solar", "hydro", "biomass"}

RENEWABLE_PCT_TOLERANCE = 0.01
TOTAL_MW_TOLERANCE      = 1.0


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def classify_market(price: float, baseline: float) -> str:
    """Map a price onto low / normal / high relative to a provider baseline."""
    if price < baseline * LOW_PRICE_RATIO:
        return "low"
    if price > baseline * HIGH_PRICE_RATIO:
        return "high"
    return "normal"


class ProviderStatus(str, Enum):
    PENDING        = "pending"
    FETCHING       = "fetching"
    SUCCESS        = "success"
    PARTIAL        = "partial"
    TIMED_OUT      = "timed_out"
    FAILED         = "failed"
    NOT_CONFIGURED = "not_configured"
    AUTH_FAILED    = "auth_failed"


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class PricingSnapshot(BaseModel):
    current_price:  float                # currency/MWh
    average_price:  float
    peak_price:     float
    off_peak_price: float
    timestamp:      datetime
    source:         str                  # e.g. "ercot_api_spp", "miso_api_lmp_estimated"
    baseline_price: float = Field(exclude=True)
    price_node:     Optional[str] = None # settlement point the current price came from

    @computed_field  # type: ignore[prop-decorator]
    @property
    def market_conditions(self) -> str:
        return classify_market(self.current_price, self.baseline_price)


class LoadSnapshot(BaseModel):
    current_demand_mw:  float = Field(gt=0)
    peak_forecast_mw:   float
    reserve_margin_pct: float
    timestamp:          datetime
    source:             str

    @model_validator(mode="after")
    def _peak_covers_current(self) -> "LoadSnapshot":
        if self.peak_forecast_mw < self.current_demand_mw:
            raise ValueError(
                f"peak_forecast_mw {self.peak_forecast_mw} below "
                f"current_demand_mw {self.current_demand_mw}"
            )
        return self


class GenerationMix(BaseModel):
    total_generation_mw:  float
    fuel_mix:             dict[str, float]
    renewable_percentage: float
    timestamp:            datetime
    source:               str

    @model_validator(mode="after")
    def _check_invariants(self) -> "GenerationMix":
        unknown = set(self.fuel_mix) - set(FUEL_TYPES)
        if unknown:
            raise ValueError(f"unknown fuel types: {sorted(unknown)}")
        total = sum(self.fuel_mix.values())
        if abs(total - self.total_generation_mw) > TOTAL_MW_TOLERANCE:
            raise ValueError(f"fuel mix sums to {total}, total is {self.total_generation_mw}")
        if self.total_generation_mw <= 0:
            raise ValueError("total_generation_mw must be positive")
        renewable = sum(mw for fuel, mw in self.fuel_mix.items() if fuel in RENEWABLE_FUELS)
        expected = renewable / self.total_generation_mw * 100
        if abs(expected - self.renewable_percentage) >= RENEWABLE_PCT_TOLERANCE:
            raise ValueError(
                f"renewable_percentage {self.renewable_percentage} != {expected:.4f}"
            )
        return self

    @classmethod
    def from_fuels(
        cls,
        fuels: Mapping[str, float],
        *,
        timestamp: datetime,
        source: str,
    ) -> "GenerationMix":
        """Build a mix whose total and renewable share are derived from ``fuels``."""
        mix = {fuel: round(float(mw), 2) for fuel, mw in fuels.items()}
        total = sum(mix.values())
        if total <= 0:
            raise ValueError("generation mix has no positive output")
        renewable = sum(mw for fuel, mw in mix.items() if fuel in RENEWABLE_FUELS)
        return cls(
            total_generation_mw=round(total, 2),
            fuel_mix=mix,
            renewable_percentage=round(renewable / total * 100, 4),
            timestamp=timestamp,
            source=source,
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ProviderResult(BaseModel):
    """Whatever one provider task produced; every field is independently optional."""
    model_config = ConfigDict(populate_by_name=True)

    pricing:        Optional[PricingSnapshot] = None
    load:           Optional[LoadSnapshot]    = Field(default=None, alias="loadData")
    generation_mix: Optional[GenerationMix]   = Field(default=None, alias="generationMix")
    extras:         dict[str, Any]            = Field(default_factory=dict)
    status:         ProviderStatus            = ProviderStatus.PENDING

    @property
    def is_empty(self) -> bool:
        return self.pricing is None and self.load is None and self.generation_mix is None

    def to_wire(self) -> dict[str, Any]:
        """Wire form: snapshots under their public keys plus provider extras."""
        body = self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"extras", "status"},
        )
        body.update(self.extras)
        return body


class AggregateResult(BaseModel):
    results:      dict[str, ProviderResult]
    success:      bool = True
    error:        Optional[str] = None
    generated_at: datetime = Field(default_factory=utc_now)

    def statuses(self) -> dict[str, str]:
        return {pid: r.status.value for pid, r in self.results.items()}

