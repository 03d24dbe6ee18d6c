"""Tests for ResponseAssembler."""

import json

from feeds.assembler import CORS_HEADERS, ResponseAssembler
from feeds.models import (
    AggregateResult, GenerationMix, LoadSnapshot, PricingSnapshot, ProviderResult, ProviderStatus,
)
from tests.support import FIXED_NOW


def _pricing(price: float) -> PricingSnapshot:
    return PricingSnapshot(
        current_price=price, average_price=price, peak_price=price, off_peak_price=price,
        timestamp=FIXED_NOW, source="ercot_api_spp_estimated", baseline_price=45.0,
        price_node="HB_HUBAVG",
    )


def _aggregate(**results: ProviderResult) -> AggregateResult:
    return AggregateResult(results=results, generated_at=FIXED_NOW)


def _full_ercot() -> ProviderResult:
    return ProviderResult(
        pricing=_pricing(42.17),
        load=LoadSnapshot(
            current_demand_mw=52_000, peak_forecast_mw=61_000, reserve_margin_pct=12.3,
            timestamp=FIXED_NOW, source="ercot_api_load",
        ),
        generation_mix=GenerationMix.from_fuels(
            {"gas": 30_000, "wind": 12_000, "solar": 10_000},
            timestamp=FIXED_NOW, source="ercot_api_fuel_mix",
        ),
        status=ProviderStatus.SUCCESS,
    )


class TestAssemble:

    def test_full_payload_shape(self):
        aggregate = _aggregate(
            ercot=_full_ercot(),
            aeso=ProviderResult(pricing=_pricing(70.0), extras={"rolling_30day_avg": 61.02},
                                status=ProviderStatus.PARTIAL),
            pjm=ProviderResult(status=ProviderStatus.NOT_CONFIGURED),
        )

        resp = ResponseAssembler().assemble(aggregate)
        body = json.loads(resp.body)

        assert resp.status_code == 200
        assert body["success"] is True
        assert "degraded" not in body
        assert body["timestamp"].startswith("2024-05-01T19:00:00")
        assert set(body["ercot"]) == {"pricing", "loadData", "generationMix"}
        assert body["ercot"]["pricing"]["market_conditions"] == "normal"
        assert body["ercot"]["generationMix"]["fuel_mix"]["wind"] == 12_000
        assert body["aeso"]["rolling_30day_avg"] == 61.02
        assert body["pjm"] == {}

    def test_cors_headers_on_every_response(self):
        resp = ResponseAssembler().assemble(_aggregate(ercot=_full_ercot()))
        for name, value in CORS_HEADERS.items():
            assert resp.headers[name] == value
        assert resp.media_type == "application/json"

    def test_unencodable_extra_degrades_to_pricing_only(self):
        aggregate = _aggregate(
            ercot=_full_ercot(),
            miso=ProviderResult(pricing=_pricing(30.0), extras={"hub_count": object()},
                                status=ProviderStatus.PARTIAL),
            spp=ProviderResult(status=ProviderStatus.TIMED_OUT),
        )

        resp = ResponseAssembler().assemble(aggregate)
        body = json.loads(resp.body)

        assert resp.status_code == 200
        assert body["success"] is True
        assert body["degraded"] is True
        assert set(body["ercot"]) == {"pricing"}
        assert body["ercot"]["pricing"]["current_price"] == 42.17
        assert body["miso"] == {"pricing": body["miso"]["pricing"]}
        assert body["spp"] == {}

    def test_non_finite_extra_degrades(self):
        aggregate = _aggregate(
            aeso=ProviderResult(pricing=_pricing(70.0), extras={"rolling_30day_avg": float("nan")}),
        )

        body = json.loads(ResponseAssembler().assemble(aggregate).body)

        assert body["degraded"] is True
        assert "rolling_30day_avg" not in body["aeso"]
        assert body["aeso"]["pricing"]["current_price"] == 70.0

    def test_unencodable_pricing_keeps_provider_key(self):
        class NanPricing(PricingSnapshot):
            def model_dump(self, **kwargs):
                return {"current_price": float("nan")}

        aggregate = _aggregate(
            ercot=_full_ercot(),
            ieso=ProviderResult(
                pricing=NanPricing(
                    current_price=38.0, average_price=35.0, peak_price=40.0, off_peak_price=30.0,
                    timestamp=FIXED_NOW, source="ieso_api_zonal_price", baseline_price=40.0,
                ),
                extras={"zones": object()},
            ),
        )

        body = json.loads(ResponseAssembler().assemble(aggregate).body)

        assert body["degraded"] is True
        assert body["ercot"]["pricing"]["current_price"] == 42.17
        assert body["ieso"] == {}


class TestErrorAndPreflight:

    def test_error_is_503_with_message(self):
        resp = ResponseAssembler().error("no providers configured")
        body = json.loads(resp.body)

        assert resp.status_code == 503
        assert body["success"] is False
        assert body["error"] == "no providers configured"
        assert "timestamp" in body
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

    def test_preflight_is_empty_200(self):
        resp = ResponseAssembler().preflight()
        assert resp.status_code == 200
        assert resp.body == b""
        assert resp.headers["Access-Control-Allow-Methods"] == "GET, POST, OPTIONS"
