"""Tests for the CAISO adapter."""

from datetime import datetime, timezone

import pytest

from feeds.errors import UpstreamMalformedError
from feeds.providers.caiso import (
    CAISO_TIMEZONE, CaisoAdapter, extract_oasis_csv, parse_interval_lmp, parse_outlook_demand,
    parse_outlook_fuels,
)
from tests.support import FIXED_NOW, router, zipped

OASIS_CSV = """\
INTERVALSTARTTIME_GMT,INTERVALENDTIME_GMT,NODE,MARKET_RUN_ID,LMP_TYPE,MW
2024-05-01T18:00:00-00:00,2024-05-01T18:05:00-00:00,TH_NP15_GEN-APND,RTM,LMP,30.0
2024-05-01T18:00:00-00:00,2024-05-01T18:05:00-00:00,TH_SP15_GEN-APND,RTM,LMP,33.0
2024-05-01T18:00:00-00:00,2024-05-01T18:05:00-00:00,TH_ZP26_GEN-APND,RTM,LMP,36.0
2024-05-01T18:00:00-00:00,2024-05-01T18:05:00-00:00,TH_NP15_GEN-APND,RTM,MCC,-2.5
2024-05-01T18:05:00-00:00,2024-05-01T18:10:00-00:00,TH_NP15_GEN-APND,RTM,LMP,40.0
2024-05-01T18:05:00-00:00,2024-05-01T18:10:00-00:00,TH_SP15_GEN-APND,RTM,LMP,42.0
2024-05-01T18:05:00-00:00,2024-05-01T18:10:00-00:00,TH_ZP26_GEN-APND,RTM,LMP,44.0
2024-05-01T18:05:00-00:00,2024-05-01T18:10:00-00:00,TH_SP15_GEN-APND,RTM,MCE,41.0
"""

LEGACY_OASIS_CSV = """\
INTERVALSTARTTIME_GMT,NODE,XML_DATA_ITEM,VALUE
2024-05-01T18:00:00-00:00,TH_NP15_GEN-APND,LMP_PRC,30.0
2024-05-01T18:00:00-00:00,TH_NP15_GEN-APND,LMP_CONG_PRC,1.0
"""

DEMAND_CSV = """\
Time,Day ahead forecast,Hour ahead forecast,Current demand
11:55,30000,30100,29800
12:00,30500,30400,30100
12:05,31000,,
17:00,38000,,
"""

FUEL_CSV = """\
Time,Solar,Wind,Geothermal,Biomass,Biogas,Small hydro,Coal,Nuclear,Natural Gas,Large Hydro,Batteries,Imports,Other
11:55,12000,3000,900,300,200,250,0,2200,6000,1500,-500,4000,10
12:00,12100,3100,900,300,200,250,0,2200,6100,1500,-400,4100,10
12:05,,,,,,,,,,,,,
"""

LOCAL_NOW = FIXED_NOW.astimezone(CAISO_TIMEZONE)


class TestParsers:

    def test_extract_csv_member(self):
        assert extract_oasis_csv(zipped({"PRC_INTVL_LMP.csv": "a,b\n1,2\n"})) == b"a,b\n1,2\n"

    def test_zip_without_csv_raises(self):
        with pytest.raises(UpstreamMalformedError):
            extract_oasis_csv(zipped({"INVALID_REQUEST.xml": "<error>No data</error>"}))

    def test_non_zip_raises(self):
        with pytest.raises(UpstreamMalformedError):
            extract_oasis_csv(b"<html>maintenance</html>")

    def test_only_total_lmp_component(self):
        rows = parse_interval_lmp(OASIS_CSV.encode())
        assert len(rows) == 6
        assert rows[0] == (datetime(2024, 5, 1, 18, 0, tzinfo=timezone.utc), "TH_NP15_GEN-APND", 30.0)

    def test_legacy_column_names(self):
        rows = parse_interval_lmp(LEGACY_OASIS_CSV.encode())
        assert [price for _, _, price in rows] == [30.0]

    def test_outlook_demand_window_includes_day_ahead(self):
        latest, window = parse_outlook_demand(DEMAND_CSV, LOCAL_NOW)
        # 12:00 PDT
        assert latest == (datetime(2024, 5, 1, 19, 0, tzinfo=timezone.utc), 30_100.0)
        assert max(window) == 38_000.0

    def test_outlook_fuels_skip_blank_trailing_row(self):
        stamp, fuels = parse_outlook_fuels(FUEL_CSV, LOCAL_NOW)
        assert stamp == datetime(2024, 5, 1, 19, 0, tzinfo=timezone.utc)
        assert fuels == {
            "solar": 12_100, "wind": 3_100, "other": 910, "biomass": 500,
            "hydro": 1_750, "nuclear": 2_200, "gas": 6_100,
        }


class TestCaisoAdapter:

    @pytest.mark.asyncio
    async def test_pricing_from_oasis_zip(self, make_adapter):
        calls = []
        adapter = make_adapter(
            CaisoAdapter, router({"SingleZip": zipped({"rtm.csv": OASIS_CSV})}, calls),
        )

        snap = await adapter.fetch_pricing()

        assert snap.current_price == 42.0
        assert snap.average_price == 37.5
        assert snap.peak_price == 42.0
        assert snap.off_peak_price == 33.0
        assert snap.price_node == "NODE_AVERAGE"
        assert snap.source == "caiso_api_oasis_lmp"
        assert snap.timestamp == datetime(2024, 5, 1, 18, 5, tzinfo=timezone.utc)

        params = calls[0].url.params
        assert params["queryname"] == "PRC_INTVL_LMP"
        assert params["market_run_id"] == "RTM"
        assert params["startdatetime"] == "20240501T18:00-0000"
        assert params["enddatetime"] == "20240501T19:00-0000"
        assert params["node"].split(",") == [
            "TH_NP15_GEN-APND", "TH_SP15_GEN-APND", "TH_ZP26_GEN-APND",
        ]

    @pytest.mark.asyncio
    async def test_oasis_error_zip_leaves_pricing_absent(self, make_adapter):
        adapter = make_adapter(CaisoAdapter, router({
            "SingleZip": zipped({"INVALID_REQUEST.xml": "<error/>"}),
            "demand.csv": DEMAND_CSV,
            "fuelsource.csv": FUEL_CSV,
        }))

        result = await adapter.fetch()

        assert result.pricing is None
        assert result.load.current_demand_mw == 30_100
        assert result.load.peak_forecast_mw == 38_000
        assert result.load.source == "caiso_api_outlook_demand"
        assert result.generation_mix.source == "caiso_api_outlook_fuelsource"
        assert result.generation_mix.total_generation_mw == 26_660
