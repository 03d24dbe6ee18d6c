"""
GridPulse — CAISO adapter.

Pricing comes from OASIS (no authentication), load and generation from the
public Today's Outlook CSVs.

OASIS SingleZip
    https://oasis.caiso.com/oasisapi/SingleZip?queryname=PRC_INTVL_LMP
        &market_run_id=RTM&node=<a,b,c>&startdatetime=...&resultformat=6
    A ZIP holding one CSV.  One row per (interval, node, component):
        INTERVALSTARTTIME_GMT, NODE, LMP_TYPE (LMP|MCE|MCC|MCL|MGHG), MW
    Older report versions name the component column XML_DATA_ITEM (LMP_PRC)
    and the value column VALUE.  A ZIP without a CSV is an OASIS error
    response (the XML error document is zipped instead).

Today's Outlook
    https://www.caiso.com/outlook/current/demand.csv
        Time, Day ahead forecast, Hour ahead forecast, Current demand
    https://www.caiso.com/outlook/current/fuelsource.csv
        Time, Solar, Wind, Geothermal, Biomass, Biogas, Small hydro, Coal,
        Nuclear, Natural Gas, Large Hydro, Batteries, Imports, Other
    Times are HH:MM, Pacific, for the current operating day.

The system price is the mean of the three trading hubs (NP15, SP15, ZP26).
"""

from __future__ import annotations

import io
import zipfile
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import pandas as pd
from loguru import logger

from feeds.errors import UpstreamMalformedError
from feeds.models import GenerationMix, LoadSnapshot, PricingSnapshot
from feeds.providers.base import (
    ProviderAdapter, accumulate, finite, interval_prices, map_fuel, read_csv_frame,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OASIS_URL      = "https://oasis.caiso.com/oasisapi/SingleZip"
DEMAND_CSV_URL = "https://www.caiso.com/outlook/current/demand.csv"
FUEL_CSV_URL   = "https://www.caiso.com/outlook/current/fuelsource.csv"

CAISO_TIMEZONE = ZoneInfo("America/Los_Angeles")
OASIS_STAMP    = "%Y%m%dT%H:%M-0000"
PRICE_LOOKBACK = timedelta(hours=1)

TRADING_HUBS = ("TH_NP15_GEN-APND", "TH_SP15_GEN-APND", "TH_ZP26_GEN-APND")

FUEL_MAP: dict[str, Optional[str]] = {
    "solar":       "solar",
    "wind":        "wind",
    "geothermal":  "other",
    "biomass":     "biomass",
    "biogas":      "biomass",
    "small hydro": "hydro",
    "large hydro": "hydro",
    "coal":        "coal",
    "nuclear":     "nuclear",
    "natural gas": "gas",
    "other":       "other",
    "batteries":   None,
    "imports":     None,
}

DEMAND_COLUMNS = ("Time", "Current demand")


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def extract_oasis_csv(content: bytes) -> bytes:
    """Return the CSV member of an OASIS SingleZip response."""
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as zf:
            name = next((n for n in zf.namelist() if n.lower().endswith(".csv")), None)
            if name is None:
                raise UpstreamMalformedError(
                    f"OASIS ZIP holds no CSV ({', '.join(zf.namelist()) or 'empty'})"
                )
            return zf.read(name)
    except zipfile.BadZipFile as exc:
        raise UpstreamMalformedError("OASIS response is not a ZIP archive") from exc


def parse_interval_lmp(csv_bytes: bytes) -> list[tuple[datetime, str, Optional[float]]]:
    """Rows of (interval start UTC, node, LMP) for the total-LMP component only."""
    df = read_csv_frame(csv_bytes, ("INTERVALSTARTTIME_GMT", "NODE"))

    if "LMP_TYPE" in df.columns:
        df = df[df["LMP_TYPE"].astype(str).str.strip() == "LMP"]
    elif "XML_DATA_ITEM" in df.columns:
        df = df[df["XML_DATA_ITEM"].astype(str).str.strip() == "LMP_PRC"]
    else:
        raise UpstreamMalformedError("OASIS CSV has neither LMP_TYPE nor XML_DATA_ITEM")

    value_col = "MW" if "MW" in df.columns else "VALUE"
    if value_col not in df.columns:
        raise UpstreamMalformedError("OASIS CSV has no MW/VALUE column")

    starts = pd.to_datetime(df["INTERVALSTARTTIME_GMT"], utc=True, errors="coerce")
    prices = pd.to_numeric(df[value_col], errors="coerce")
    return [
        (start.to_pydatetime(), str(node), finite(price))
        for start, node, price in zip(starts, df["NODE"], prices)
        if not pd.isna(start)
    ]


def _outlook_times(df: pd.DataFrame, day: datetime) -> pd.Series:
    """HH:MM strings on ``day`` (Pacific) -> UTC timestamps."""
    base = pd.Timestamp(day.date()).tz_localize(CAISO_TIMEZONE)
    offsets = pd.to_timedelta(df["Time"].astype(str).str.strip() + ":00", errors="coerce")
    return (base + offsets).dt.tz_convert("UTC")


def parse_outlook_demand(
    csv_text: str, day: datetime,
) -> tuple[Optional[tuple[datetime, float]], list[float]]:
    """
    Return ((timestamp, current demand), window) from demand.csv.

    The window holds every observed demand value plus the day-ahead
    forecast for the whole day, so its maximum is the day's peak.
    """
    df = read_csv_frame(
        csv_text, DEMAND_COLUMNS,
        numeric=("Current demand", "Day ahead forecast", "Hour ahead forecast"),
    )
    df["at"] = _outlook_times(df, day)
    observed = df.dropna(subset=["at", "Current demand"])
    if observed.empty:
        return None, []

    last = observed.iloc[-1]
    window = observed["Current demand"].tolist()
    if "Day ahead forecast" in df.columns:
        window += df["Day ahead forecast"].dropna().tolist()
    return (last["at"].to_pydatetime(), float(last["Current demand"])), window


def parse_outlook_fuels(
    csv_text: str, day: datetime,
) -> tuple[Optional[datetime], dict[str, float]]:
    df = read_csv_frame(csv_text, ("Time",))
    fuel_cols = [c for c in df.columns if c != "Time"]
    for col in fuel_cols:
        df[col] = pd.to_numeric(df[col], errors="coerce")
    df["at"] = _outlook_times(df, day)
    df = df.dropna(subset=["at"]).dropna(subset=fuel_cols, how="all")
    if df.empty:
        return None, {}

    last = df.iloc[-1]
    fuels: dict[str, float] = {}
    for col in fuel_cols:
        accumulate(fuels, map_fuel(col, FUEL_MAP), finite(last[col]))
    return last["at"].to_pydatetime(), fuels


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class CaisoAdapter(ProviderAdapter):
    provider_id = "caiso"

    def _local_now(self) -> datetime:
        return self.now().astimezone(CAISO_TIMEZONE)

    async def fetch_pricing(self) -> Optional[PricingSnapshot]:
        end = self.now().astimezone(timezone.utc)
        start = end - PRICE_LOOKBACK
        content = await self._get_bytes(OASIS_URL, params={
            "queryname":     "PRC_INTVL_LMP",
            "version":       "3",
            "market_run_id": "RTM",
            "node":          ",".join(TRADING_HUBS),
            "startdatetime": start.strftime(OASIS_STAMP),
            "enddatetime":   end.strftime(OASIS_STAMP),
            "resultformat":  "6",
        })
        rows = parse_interval_lmp(extract_oasis_csv(content))
        series = interval_prices(rows, None, self.settings.price_bounds)
        if not series:
            logger.warning("CAISO OASIS: no interval with three plausible hub prices.")
            return None

        stamp, current, label = series[-1]
        return self.build_pricing(
            current,
            [price for _, price, _ in series],
            timestamp=stamp,
            method="oasis_lmp",
            price_node=label,
        )

    async def fetch_load(self) -> Optional[LoadSnapshot]:
        latest, window = parse_outlook_demand(
            await self._get_text(DEMAND_CSV_URL), self._local_now(),
        )
        if latest is None:
            logger.warning("CAISO outlook: no current demand rows.")
            return None

        stamp, demand = latest
        return self.build_load(demand, window, timestamp=stamp, method="outlook_demand")

    async def fetch_generation_mix(self) -> Optional[GenerationMix]:
        stamp, fuels = parse_outlook_fuels(
            await self._get_text(FUEL_CSV_URL), self._local_now(),
        )
        return self.build_generation(
            fuels, timestamp=stamp or self.now(), method="outlook_fuelsource",
        )
