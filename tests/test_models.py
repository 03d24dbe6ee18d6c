"""Tests for the canonical schema."""

import pytest
from pydantic import ValidationError

from feeds.models import (
    GenerationMix, LoadSnapshot, PricingSnapshot, ProviderResult, ProviderStatus,
    RENEWABLE_FUELS, classify_market,
)
from tests.support import FIXED_NOW


def _pricing(price: float, baseline: float = 40.0) -> PricingSnapshot:
    return PricingSnapshot(
        current_price=price,
        average_price=price,
        peak_price=price,
        off_peak_price=price,
        timestamp=FIXED_NOW,
        source="pjm_api_rt_lmp",
        baseline_price=baseline,
    )


class TestMarketConditions:

    @pytest.mark.parametrize("price, expected", [
        (23.9, "low"),
        (24.0, "normal"),
        (40.0, "normal"),
        (60.0, "normal"),
        (60.1, "high"),
        (-12.0, "low"),
    ])
    def test_classify_against_baseline(self, price, expected):
        assert classify_market(price, 40.0) == expected

    def test_market_conditions_follows_price(self):
        assert _pricing(80.0).market_conditions == "high"
        assert _pricing(10.0).market_conditions == "low"

    def test_baseline_is_not_on_the_wire(self):
        dumped = _pricing(45.0).model_dump(mode="json")
        assert "baseline_price" not in dumped
        assert dumped["market_conditions"] == "normal"
        assert "price_node" in dumped


class TestLoadSnapshot:

    def test_peak_below_current_rejected(self):
        with pytest.raises(ValidationError):
            LoadSnapshot(
                current_demand_mw=50_000, peak_forecast_mw=49_000,
                reserve_margin_pct=12.0, timestamp=FIXED_NOW, source="x",
            )

    def test_demand_must_be_positive(self):
        with pytest.raises(ValidationError):
            LoadSnapshot(
                current_demand_mw=0, peak_forecast_mw=10,
                reserve_margin_pct=12.0, timestamp=FIXED_NOW, source="x",
            )


class TestGenerationMix:

    @pytest.mark.parametrize("fuels", [
        {"gas": 30_000, "wind": 15_000, "solar": 10_000, "nuclear": 5_000},
        {"hydro": 4_000.333, "biomass": 20.5, "other": 0.1},
        {"coal": 12_000},
        {"wind": 1.0, "solar": 2.0, "gas": 3.0, "hydro": 4.0, "biomass": 5.0},
    ])
    def test_renewable_percentage_invariant(self, fuels):
        mix = GenerationMix.from_fuels(fuels, timestamp=FIXED_NOW, source="test")

        renewable = sum(mw for fuel, mw in mix.fuel_mix.items() if fuel in RENEWABLE_FUELS)
        assert abs(renewable / mix.total_generation_mw * 100 - mix.renewable_percentage) < 0.01
        assert abs(sum(mix.fuel_mix.values()) - mix.total_generation_mw) <= 1.0

    def test_biomass_counts_as_renewable(self):
        mix = GenerationMix.from_fuels(
            {"biomass": 250, "gas": 750}, timestamp=FIXED_NOW, source="test",
        )
        assert mix.renewable_percentage == 25.0

    def test_unknown_fuel_rejected(self):
        with pytest.raises(ValidationError):
            GenerationMix.from_fuels({"gas": 100, "fusion": 5}, timestamp=FIXED_NOW, source="test")

    def test_inconsistent_percentage_rejected(self):
        with pytest.raises(ValidationError):
            GenerationMix(
                total_generation_mw=100, fuel_mix={"wind": 50, "gas": 50},
                renewable_percentage=10.0, timestamp=FIXED_NOW, source="test",
            )

    def test_empty_mix_rejected(self):
        with pytest.raises(ValueError):
            GenerationMix.from_fuels({}, timestamp=FIXED_NOW, source="test")


class TestProviderResult:

    def test_wire_form_uses_public_keys(self):
        load = LoadSnapshot(
            current_demand_mw=50_000, peak_forecast_mw=55_000,
            reserve_margin_pct=12.3, timestamp=FIXED_NOW, source="ercot_api_load",
        )
        result = ProviderResult(
            pricing=_pricing(45.0), load=load,
            extras={"rolling_30day_avg": 61.0}, status=ProviderStatus.PARTIAL,
        )

        wire = result.to_wire()

        assert set(wire) == {"pricing", "loadData", "rolling_30day_avg"}
        assert wire["loadData"]["current_demand_mw"] == 50_000
        assert wire["pricing"]["timestamp"].startswith("2024-05-01T19:00:00")

    def test_empty_result(self):
        result = ProviderResult(status=ProviderStatus.NOT_CONFIGURED)
        assert result.is_empty
        assert result.to_wire() == {}
