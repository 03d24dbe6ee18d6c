"""Tests for the MISO adapter."""

from datetime import date, datetime, timezone

import pytest

from feeds.errors import UpstreamMalformedError
from feeds.providers.miso import (
    MisoAdapter, parse_fuel_mix, parse_lmp_table, parse_ref_id, parse_total_load,
)
from tests.support import router

REF_ID = "01-May-2024 - Interval 14:05 EST"


def _lmp(*nodes):
    return {"LMPData": {
        "RefId": REF_ID,
        "FiveMinLMP": {
            "HourAndMin": "14:05",
            "PricingNode": [{"name": name, "LMP": lmp, "MLC": "0.1", "MCC": "0.0"}
                            for name, lmp in nodes],
        },
    }}


LMP_TABLE = _lmp(
    ("ARKANSAS.HUB", "30.00"),
    ("ILLINOIS.HUB", "35.00"),
    ("INDIANA.HUB", "40.00"),
    ("MICHIGAN.HUB", "9999.00"),
    ("AMIL.EDWARDS2", "100.00"),
)

TOTAL_LOAD = {"LoadInfo": {
    "RefId": REF_ID,
    "FiveMinTotalLoad": [
        {"Load": {"Time": "14:05", "Value": "76000"}},
        {"Load": {"Time": "14:00", "Value": "75,000"}},
    ],
    "MediumTermLoadForecast": [
        {"Forecast": {"HourEnding": "15", "LoadForecast": "78000"}},
        {"Forecast": {"HourEnding": "17", "LoadForecast": "82000"}},
    ],
}}

FUEL_MIX = {"Fuel": {"Type": [
    {"INTERVALEST": "2024-05-01 2:00:00 PM", "CATEGORY": "Coal", "ACT": "20000"},
    {"INTERVALEST": "2024-05-01 2:00:00 PM", "CATEGORY": "Natural Gas", "ACT": "30000"},
    {"INTERVALEST": "2024-05-01 2:00:00 PM", "CATEGORY": "Nuclear", "ACT": "10000"},
    {"INTERVALEST": "2024-05-01 2:00:00 PM", "CATEGORY": "Wind", "ACT": "15000"},
    {"INTERVALEST": "2024-05-01 2:00:00 PM", "CATEGORY": "Solar", "ACT": "5000"},
    {"INTERVALEST": "2024-05-01 2:00:00 PM", "CATEGORY": "Storage", "ACT": "300"},
    {"INTERVALEST": "2024-05-01 2:00:00 PM", "CATEGORY": "Other", "ACT": "500"},
]}}


class TestParsers:

    def test_ref_id(self):
        assert parse_ref_id(REF_ID) == (date(2024, 5, 1), "14:05")
        assert parse_ref_id("01-May-2024") == (date(2024, 5, 1), None)
        assert parse_ref_id("garbage") == (None, None)

    def test_lmp_table_stamp_is_est(self):
        stamp, nodes = parse_lmp_table(LMP_TABLE)
        assert stamp == datetime(2024, 5, 1, 19, 5, tzinfo=timezone.utc)
        assert nodes[0].name == "ARKANSAS.HUB"
        assert nodes[0].lmp == 30.0

    def test_single_node_rendered_as_object(self):
        payload = {"LMPData": {"RefId": REF_ID, "FiveMinLMP": {
            "PricingNode": {"name": "MINN.HUB", "LMP": "21.5"},
        }}}
        _, nodes = parse_lmp_table(payload)
        assert [(n.name, n.lmp) for n in nodes] == [("MINN.HUB", 21.5)]

    def test_missing_lmp_data_raises(self):
        with pytest.raises(UpstreamMalformedError):
            parse_lmp_table({"Message": "error"})

    def test_five_min_lmp_not_an_object_raises(self):
        with pytest.raises(UpstreamMalformedError):
            parse_lmp_table({"LMPData": {"RefId": REF_ID, "FiveMinLMP": ["x"]}})

    def test_total_load_sorted_with_forecast(self):
        actuals, forecast = parse_total_load(TOTAL_LOAD)
        assert [r.mw for r in actuals] == [75_000.0, 76_000.0]
        assert forecast[-1].at == datetime(2024, 5, 1, 21, 0, tzinfo=timezone.utc)
        assert forecast[-1].mw == 82_000.0

    def test_total_load_tolerates_stray_rows(self):
        payload = {"LoadInfo": {
            "RefId": REF_ID,
            "FiveMinTotalLoad": {"Load": {"Time": "14:00", "Value": "75000"}},
            "MediumTermLoadForecast": [None, {"Forecast": ["junk"]}],
        }}
        actuals, forecast = parse_total_load(payload)
        assert len(actuals) == 1
        assert forecast == []

    def test_total_load_without_ref_id_raises(self):
        with pytest.raises(UpstreamMalformedError):
            parse_total_load({"LoadInfo": {"FiveMinTotalLoad": []}})

    def test_fuel_mix(self):
        stamp, fuels = parse_fuel_mix(FUEL_MIX)
        assert stamp == datetime(2024, 5, 1, 19, 0, tzinfo=timezone.utc)
        assert fuels == {"coal": 20_000, "gas": 30_000, "nuclear": 10_000,
                         "wind": 15_000, "solar": 5_000, "other": 500}


class TestMisoAdapter:

    @pytest.mark.asyncio
    async def test_price_is_mean_of_plausible_hubs(self, make_adapter):
        adapter = make_adapter(MisoAdapter, router({"getlmpconsolidatedtable": LMP_TABLE}))

        snap = await adapter.fetch_pricing()

        assert snap.current_price == 35.0
        assert snap.price_node == "NODE_AVERAGE"
        assert snap.source == "miso_api_lmp_estimated"
        assert snap.timestamp == datetime(2024, 5, 1, 19, 5, tzinfo=timezone.utc)
        assert adapter.extras["hub_count"] == 4

    @pytest.mark.asyncio
    async def test_too_few_hubs_is_absent(self, make_adapter):
        payload = _lmp(("ARKANSAS.HUB", "30.00"), ("ILLINOIS.HUB", "35.00"), ("X.NODE", "1.0"))
        adapter = make_adapter(MisoAdapter, router({"getlmpconsolidatedtable": payload}))

        assert await adapter.fetch_pricing() is None

    @pytest.mark.asyncio
    async def test_load_peak_from_forecast(self, make_adapter):
        adapter = make_adapter(MisoAdapter, router({"gettotalload": TOTAL_LOAD}))

        snap = await adapter.fetch_load()

        assert snap.current_demand_mw == 76_000
        assert snap.peak_forecast_mw == 82_000
        assert snap.source == "miso_api_total_load"

    @pytest.mark.asyncio
    async def test_generation_mix(self, make_adapter):
        adapter = make_adapter(MisoAdapter, router({"getfuelmix": FUEL_MIX}))

        mix = await adapter.fetch_generation_mix()

        assert mix.total_generation_mw == 80_500
        assert "storage" not in mix.fuel_mix
        assert mix.source == "miso_api_fuel_mix"

    @pytest.mark.asyncio
    async def test_fetch_requests_json_from_broker(self, make_adapter):
        calls = []
        adapter = make_adapter(MisoAdapter, router({
            "getlmpconsolidatedtable": LMP_TABLE,
            "gettotalload": TOTAL_LOAD,
            "getfuelmix": FUEL_MIX,
        }, calls))

        result = await adapter.fetch()

        assert result.pricing and result.load and result.generation_mix
        assert [c.url.params["messageType"] for c in calls] == [
            "getlmpconsolidatedtable", "gettotalload", "getfuelmix",
        ]
        assert all(c.url.params["returnType"] == "json" for c in calls)

    @pytest.mark.asyncio
    async def test_bad_lmp_table_keeps_load(self, make_adapter):
        adapter = make_adapter(MisoAdapter, router({
            "getlmpconsolidatedtable": {"LMPData": {"RefId": REF_ID, "FiveMinLMP": ["x"]}},
            "gettotalload": TOTAL_LOAD,
            "getfuelmix": FUEL_MIX,
        }))

        result = await adapter.fetch()

        assert result.pricing is None
        assert result.load.current_demand_mw == 76_000
        assert result.generation_mix is not None
