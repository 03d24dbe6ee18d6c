"""
GridPulse — NYISO adapter.

Public MIS CSV reports, one file per operating day (no authentication):

  realtime/{YYYYMMDD}realtime_zone.csv   "Time Stamp", Name, PTID, "LBMP ($/MWHr)", ...
  pal/{YYYYMMDD}pal.csv                  "Time Stamp", "Time Zone", Name, PTID, Load
  rtfuelmix/{YYYYMMDD}rtfuelmix.csv      "Time Stamp", "Time Zone", "Fuel Category", "Gen MW"

"Time Stamp" is MM/DD/YYYY HH:MM:SS, Eastern prevailing time.  The zonal
price file also lists the external proxies (H Q, NPX, O H, PJM); only the
eleven internal zones enter the system average.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

import pandas as pd
from loguru import logger

from feeds.models import GenerationMix, LoadSnapshot, PricingSnapshot
from feeds.providers.base import (
    ProviderAdapter, accumulate, finite, interval_prices, map_fuel, read_csv_frame,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MIS_BASE_URL   = "http://mis.nyiso.com/public/csv"
NYISO_TIMEZONE = ZoneInfo("America/New_York")
STAMP_FORMAT   = "%m/%d/%Y %H:%M:%S"

LBMP_COLUMN = "LBMP ($/MWHr)"

INTERNAL_ZONES = frozenset({
    "CAPITL", "CENTRL", "DUNWOD", "GENESE", "HUD VL", "LONGIL",
    "MHK VL", "MILLWD", "N.Y.C.", "NORTH", "WEST",
})

FUEL_MAP: dict[str, Optional[str]] = {
    "dual fuel":         "gas",
    "natural gas":       "gas",
    "nuclear":           "nuclear",
    "hydro":             "hydro",
    "wind":              "wind",
    "other renewables":  "biomass",
    "other fossil fuels": "other",
}


def report_url(report: str, day: datetime) -> str:
    return f"{MIS_BASE_URL}/{report}/{day:%Y%m%d}{report}.csv"


def zone_price_url(day: datetime) -> str:
    return f"{MIS_BASE_URL}/realtime/{day:%Y%m%d}realtime_zone.csv"


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def _stamps(df: pd.DataFrame) -> pd.Series:
    local = pd.to_datetime(df["Time Stamp"], format=STAMP_FORMAT, errors="coerce")
    return (
        local.dt.tz_localize(NYISO_TIMEZONE, ambiguous="NaT", nonexistent="NaT")
        .dt.tz_convert("UTC")
    )


def parse_zone_prices(csv_text: str) -> list[tuple[datetime, str, Optional[float]]]:
    df = read_csv_frame(csv_text, ("Time Stamp", "Name", LBMP_COLUMN), numeric=(LBMP_COLUMN,))
    df["at"] = _stamps(df)
    df = df[df["Name"].astype(str).str.strip().isin(INTERNAL_ZONES)].dropna(subset=["at"])
    return [
        (at.to_pydatetime(), str(name).strip(), finite(price))
        for at, name, price in zip(df["at"], df["Name"], df[LBMP_COLUMN])
    ]


def parse_zone_load(csv_text: str) -> list[tuple[datetime, float]]:
    """
    System load per interval, summed over zones.

    The newest interval is often published before every zone has reported;
    intervals with fewer zones than the day's maximum are left out.
    """
    df = read_csv_frame(csv_text, ("Time Stamp", "Name", "Load"), numeric=("Load",))
    df["at"] = _stamps(df)
    df = df.dropna(subset=["at", "Load"])
    if df.empty:
        return []

    grouped = df.groupby("at")["Load"].agg(["sum", "count"])
    complete = grouped[grouped["count"] == grouped["count"].max()]
    return [(at.to_pydatetime(), float(total)) for at, total in complete["sum"].items()]


def parse_fuel_mix(csv_text: str) -> tuple[Optional[datetime], dict[str, float]]:
    df = read_csv_frame(csv_text, ("Time Stamp", "Fuel Category", "Gen MW"), numeric=("Gen MW",))
    df["at"] = _stamps(df)
    df = df.dropna(subset=["at"])
    if df.empty:
        return None, {}

    latest = df["at"].max()
    fuels: dict[str, float] = {}
    for category, mw in df.loc[df["at"] == latest, ["Fuel Category", "Gen MW"]].itertuples(index=False):
        accumulate(fuels, map_fuel(str(category), FUEL_MAP), finite(mw))
    return latest.to_pydatetime(), fuels


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class NyisoAdapter(ProviderAdapter):
    provider_id = "nyiso"

    def _today(self) -> datetime:
        return self.now().astimezone(NYISO_TIMEZONE)

    async def fetch_pricing(self) -> Optional[PricingSnapshot]:
        rows = parse_zone_prices(await self._get_text(zone_price_url(self._today())))
        series = interval_prices(rows, None, self.settings.price_bounds)
        if not series:
            logger.warning("NYISO LBMP: no interval with three plausible zone prices.")
            return None

        stamp, current, label = series[-1]
        return self.build_pricing(
            current,
            [price for _, price, _ in series],
            timestamp=stamp,
            method="lbmp",
            price_node=label,
        )

    async def fetch_load(self) -> Optional[LoadSnapshot]:
        series = parse_zone_load(await self._get_text(report_url("pal", self._today())))
        if not series:
            logger.warning("NYISO PAL: no complete load interval.")
            return None

        stamp, current = series[-1]
        return self.build_load(
            current,
            [mw for _, mw in series],
            timestamp=stamp,
            method="pal",
        )

    async def fetch_generation_mix(self) -> Optional[GenerationMix]:
        stamp, fuels = parse_fuel_mix(
            await self._get_text(report_url("rtfuelmix", self._today()))
        )
        return self.build_generation(fuels, timestamp=stamp or self.now(), method="rtfuelmix")
