"""
GridPulse — SPP adapter.

Public CSV downloads (no authentication):

  RTBM LMP, latest interval by settlement location
      https://portal.spp.org/file-browser-api/download/rtbm-lmp-by-location
          ?path=/RTBM-LMP-SL-latestInterval.csv
      Interval, GMTIntervalEnd, Settlement Location, Pnode, LMP, MLC, MCC, MEC
  Load forecast vs actual (marketplace chart feed)
      https://marketplace.spp.org/chart-api/load-forecast/asFile
      Interval, GMTIntervalEnd, STLF, MTLF, Actual
  Generation mix (marketplace chart feed)
      https://marketplace.spp.org/chart-api/gen-mix/asFile
      GMTTime, "Coal Market", "Coal Self", "Natural Gas Market", ...

Generation columns come in "<fuel> Market" / "<fuel> Self" pairs
(self-scheduled output is reported apart from market dispatch); both halves
count toward the fuel.  The latest-interval price file has one interval,
so SPP pricing statistics are always estimated.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import pandas as pd
from loguru import logger

from feeds.models import GenerationMix, LoadSnapshot, PricingSnapshot
from feeds.providers.base import (
    ProviderAdapter, accumulate, finite, map_fuel, read_csv_frame, select_system_price,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

LMP_CSV_URL = (
    "https://portal.spp.org/file-browser-api/download/rtbm-lmp-by-location"
    "?path=/RTBM-LMP-SL-latestInterval.csv"
)
LOAD_CSV_URL    = "https://marketplace.spp.org/chart-api/load-forecast/asFile"
GEN_MIX_CSV_URL = "https://marketplace.spp.org/chart-api/gen-mix/asFile"

GEN_SUFFIXES = (" Market", " Self")

FUEL_MAP: dict[str, Optional[str]] = {
    "coal":                     "coal",
    "natural gas":              "gas",
    "diesel fuel oil":          "other",
    "hydro":                    "hydro",
    "nuclear":                  "nuclear",
    "solar":                    "solar",
    "wind":                     "wind",
    "waste disposal services":  "biomass",
    "waste heat":               "other",
    "other":                    "other",
    "load":                     None,
    "storage":                  None,
}


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def parse_lmp_by_location(csv_text: str) -> tuple[Optional[datetime], list[tuple[str, Optional[float]]]]:
    df = read_csv_frame(csv_text, ("GMTIntervalEnd", "Settlement Location", "LMP"), numeric=("LMP",))
    ends = pd.to_datetime(df["GMTIntervalEnd"], utc=True, errors="coerce").dropna()
    stamp = ends.max().to_pydatetime() if not ends.empty else None
    points = [
        (str(loc).strip(), finite(lmp))
        for loc, lmp in zip(df["Settlement Location"], df["LMP"])
    ]
    return stamp, points


def parse_load_forecast(csv_text: str) -> list[tuple[datetime, Optional[float], Optional[float]]]:
    """(interval end UTC, actual MW, short-term forecast MW), oldest first."""
    df = read_csv_frame(csv_text, ("GMTIntervalEnd", "Actual"), numeric=("Actual", "STLF", "MTLF"))
    df["at"] = pd.to_datetime(df["GMTIntervalEnd"], utc=True, errors="coerce")
    df = df.dropna(subset=["at"]).sort_values("at")
    forecast_col = "STLF" if "STLF" in df.columns else "MTLF"
    forecasts = df[forecast_col] if forecast_col in df.columns else pd.Series(index=df.index, dtype=float)
    return [
        (at.to_pydatetime(), finite(actual), finite(fc))
        for at, actual, fc in zip(df["at"], df["Actual"], forecasts)
    ]


def _fuel_label(column: str) -> Optional[str]:
    for suffix in GEN_SUFFIXES:
        if column.endswith(suffix):
            return column[: -len(suffix)]
    return None


def parse_gen_mix(csv_text: str) -> tuple[Optional[datetime], dict[str, float]]:
    df = read_csv_frame(csv_text, ("GMTTime",))
    df["at"] = pd.to_datetime(df["GMTTime"], utc=True, errors="coerce")
    gen_cols = [c for c in df.columns if _fuel_label(c) is not None]
    for col in gen_cols:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df = df.dropna(subset=["at"]).dropna(subset=gen_cols, how="all").sort_values("at")
    if df.empty or not gen_cols:
        return None, {}

    last = df.iloc[-1]
    fuels: dict[str, float] = {}
    for col in gen_cols:
        accumulate(fuels, map_fuel(_fuel_label(col), FUEL_MAP), finite(last[col]))
    return last["at"].to_pydatetime(), fuels


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class SppAdapter(ProviderAdapter):
    provider_id = "spp"

    async def fetch_pricing(self) -> Optional[PricingSnapshot]:
        stamp, points = parse_lmp_by_location(await self._get_text(LMP_CSV_URL))
        selected = select_system_price(points, None, self.settings.price_bounds)
        if selected is None:
            logger.warning("SPP RTBM: fewer than three plausible settlement prices.")
            return None

        price, label = selected
        self.extras["settlement_locations"] = len(points)
        return self.build_pricing(
            price,
            timestamp=stamp or self.now(),
            method="rtbm_lmp",
            price_node=label,
        )

    async def fetch_load(self) -> Optional[LoadSnapshot]:
        rows = parse_load_forecast(await self._get_text(LOAD_CSV_URL))
        actuals = [(at, mw) for at, mw, _ in rows if mw is not None]
        if not actuals:
            logger.warning("SPP load: no actual readings in chart feed.")
            return None

        stamp, current = actuals[-1]
        window = [mw for _, mw in actuals] + [fc for at, _, fc in rows if fc is not None and at > stamp]
        return self.build_load(current, window, timestamp=stamp, method="load_forecast")

    async def fetch_generation_mix(self) -> Optional[GenerationMix]:
        stamp, fuels = parse_gen_mix(await self._get_text(GEN_MIX_CSV_URL))
        return self.build_generation(fuels, timestamp=stamp or self.now(), method="gen_mix")
