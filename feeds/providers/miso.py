"""
GridPulse — MISO adapter.

Real-time data broker (no authentication):
    https://api.misoenergy.org/MISORTWDDataBroker/DataBrokerServices.asmx
        ?messageType=<type>&returnType=json

Every numeric value arrives as a string.  Market time is EST year-round.

  getlmpconsolidatedtable  LMPData.RefId "01-May-2024 - Interval 14:05 EST",
                           LMPData.FiveMinLMP.{HourAndMin, PricingNode[{name, LMP}]}
  gettotalload             LoadInfo.FiveMinTotalLoad[{Load: {Time, Value}}],
                           LoadInfo.MediumTermLoadForecast[{Forecast: {HourEnding, LoadForecast}}]
  getfuelmix               Fuel.Type[{INTERVALEST, CATEGORY, ACT}]

The system price is the mean of the ".HUB" pricing nodes; MISO publishes
no single system-wide hub.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, NamedTuple, Optional

from loguru import logger

from feeds.errors import UpstreamMalformedError
from feeds.models import GenerationMix, LoadSnapshot, PricingSnapshot
from feeds.providers.base import (
    ProviderAdapter, accumulate, finite, map_fuel, select_system_price,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DATA_BROKER_URL = "https://api.misoenergy.org/MISORTWDDataBroker/DataBrokerServices.asmx"

MISO_EST = timezone(timedelta(hours=-5), "EST")
HUB_SUFFIX = ".HUB"

_REF_ID = re.compile(r"(\d{1,2}-[A-Za-z]{3}-\d{4})(?:\s*-\s*Interval\s+(\d{1,2}:\d{2}))?")

FUEL_MAP: dict[str, Optional[str]] = {
    "coal":          "coal",
    "natural gas":   "gas",
    "nuclear":       "nuclear",
    "wind":          "wind",
    "solar":         "solar",
    "hydro":         "hydro",
    "biomass":       "biomass",
    "other":         "other",
    "storage":       None,
}


class LmpNode(NamedTuple):
    name: str
    lmp:  Optional[float]


class LoadReading(NamedTuple):
    at: datetime
    mw: Optional[float]


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def _as_list(value: Any) -> list:
    """The broker renders one-element arrays as bare objects."""
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def parse_ref_id(ref_id: str) -> tuple[Optional[date], Optional[str]]:
    """'01-May-2024 - Interval 14:05 EST' -> (date(2024, 5, 1), '14:05')"""
    match = _REF_ID.search(ref_id or "")
    if not match:
        return None, None
    try:
        day = datetime.strptime(match.group(1), "%d-%b-%Y").date()
    except ValueError:
        return None, None
    return day, match.group(2)


def _est(day: date, hhmm: str) -> Optional[datetime]:
    try:
        hours, minutes = (int(part) for part in hhmm.split(":")[:2])
    except ValueError:
        return None
    local = datetime(day.year, day.month, day.day, tzinfo=MISO_EST)
    return (local + timedelta(hours=hours, minutes=minutes)).astimezone(timezone.utc)


def parse_lmp_table(payload: Any) -> tuple[Optional[datetime], list[LmpNode]]:
    lmp_data = payload.get("LMPData") if isinstance(payload, dict) else None
    if not isinstance(lmp_data, dict):
        raise UpstreamMalformedError("response lacks LMPData")
    five_min = lmp_data.get("FiveMinLMP") or {}
    if not isinstance(five_min, dict):
        raise UpstreamMalformedError("LMPData.FiveMinLMP is not an object")
    day, interval = parse_ref_id(str(lmp_data.get("RefId", "")))
    interval = five_min.get("HourAndMin") or interval
    stamp = _est(day, interval) if day and interval else None

    nodes = [
        LmpNode(name=str(row.get("name", "")), lmp=finite(row.get("LMP")))
        for row in _as_list(five_min.get("PricingNode"))
        if isinstance(row, dict)
    ]
    return stamp, nodes


def parse_total_load(payload: Any) -> tuple[list[LoadReading], list[LoadReading]]:
    """Return (five-minute actuals, hourly forecast) for the RefId's operating day."""
    info = payload.get("LoadInfo") if isinstance(payload, dict) else None
    if not isinstance(info, dict):
        raise UpstreamMalformedError("response lacks LoadInfo")
    day, _ = parse_ref_id(str(info.get("RefId", "")))
    if day is None:
        raise UpstreamMalformedError(f"unparseable LoadInfo.RefId {info.get('RefId')!r}")

    actuals: list[LoadReading] = []
    for entry in _as_list(info.get("FiveMinTotalLoad")):
        for load in _as_list(entry.get("Load") if isinstance(entry, dict) else None):
            if not isinstance(load, dict):
                continue
            stamp = _est(day, str(load.get("Time", "")))
            if stamp is not None:
                actuals.append(LoadReading(stamp, finite(load.get("Value"))))

    forecast: list[LoadReading] = []
    for entry in _as_list(info.get("MediumTermLoadForecast")):
        for row in _as_list(entry.get("Forecast") if isinstance(entry, dict) else None):
            hour_ending = finite(row.get("HourEnding")) if isinstance(row, dict) else None
            if hour_ending is None:
                continue
            stamp = _est(day, f"{int(hour_ending) - 1}:00")
            if stamp is not None:
                forecast.append(LoadReading(stamp, finite(row.get("LoadForecast"))))

    return sorted(actuals, key=lambda r: r.at), sorted(forecast, key=lambda r: r.at)


def parse_fuel_mix(payload: Any) -> tuple[Optional[datetime], dict[str, float]]:
    fuel = payload.get("Fuel") if isinstance(payload, dict) else None
    if not isinstance(fuel, dict):
        raise UpstreamMalformedError("response lacks Fuel")

    stamp: Optional[datetime] = None
    fuels: dict[str, float] = {}
    for row in _as_list(fuel.get("Type")):
        if not isinstance(row, dict) or "CATEGORY" not in row:
            continue
        accumulate(fuels, map_fuel(str(row["CATEGORY"]), FUEL_MAP), finite(row.get("ACT")))
        if stamp is None and row.get("INTERVALEST"):
            try:
                local = datetime.strptime(row["INTERVALEST"], "%Y-%m-%d %I:%M:%S %p")
            except ValueError:
                continue
            stamp = local.replace(tzinfo=MISO_EST).astimezone(timezone.utc)
    return stamp, fuels


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class MisoAdapter(ProviderAdapter):
    provider_id = "miso"

    async def _broker(self, message_type: str) -> Any:
        return await self._get_json(
            DATA_BROKER_URL, params={"messageType": message_type, "returnType": "json"},
        )

    async def fetch_pricing(self) -> Optional[PricingSnapshot]:
        stamp, nodes = parse_lmp_table(await self._broker("getlmpconsolidatedtable"))
        hubs = [(n.name, n.lmp) for n in nodes if n.name.upper().endswith(HUB_SUFFIX)]
        selected = select_system_price(hubs, None, self.settings.price_bounds)
        if selected is None:
            logger.warning("MISO LMP: fewer than three plausible hub prices ({} hubs).", len(hubs))
            return None

        price, label = selected
        self.extras["hub_count"] = len(hubs)
        return self.build_pricing(
            price,
            timestamp=stamp or self.now(),
            method="lmp",
            price_node=label,
        )

    async def fetch_load(self) -> Optional[LoadSnapshot]:
        actuals, forecast = parse_total_load(await self._broker("gettotalload"))
        observed = [r for r in actuals if r.mw is not None]
        if not observed:
            logger.warning("MISO load: no five-minute actuals.")
            return None

        latest = observed[-1]
        return self.build_load(
            latest.mw,
            [r.mw for r in observed] + [r.mw for r in forecast],
            timestamp=latest.at,
            method="total_load",
        )

    async def fetch_generation_mix(self) -> Optional[GenerationMix]:
        stamp, fuels = parse_fuel_mix(await self._broker("getfuelmix"))
        return self.build_generation(fuels, timestamp=stamp or self.now(), method="fuel_mix")
