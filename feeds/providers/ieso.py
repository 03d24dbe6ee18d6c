"""
GridPulse — IESO (Ontario) adapter.

Public XML reports (no authentication) under
https://reports-public.ieso.ca/public/<Report>/PUB_<Report>.xml

Each report declares its own default namespace, which changes between
schema versions, so element lookups use the ``{*}`` wildcard.  IESO market
time is EST year-round.

RealtimeZonalEnergyPrices   DocBody/{DeliveryDate, DeliveryHour}
                            TransactionZone[{ZoneName, IntervalPrice[{Interval, ZonalPrice}]}]
                            one hour, twelve 5-minute intervals per zone
RealtimeTotals              DocBody/Energies/IntervalEnergy[{Interval,
                            MQ[{MarketQuantity, EnergyMW}]}]; "ONTARIO DEMAND"
                            The report covers one hour and publishes no
                            forecast, so the load peak is always estimated.
GenOutputbyFuelHourly       DocBody/DailyData[{Day, HourlyData[{Hour,
                            FuelTotal[{Fuel, EnergyValue/Output}]}]}]
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, NamedTuple, Optional
from xml.etree import ElementTree as ET

from loguru import logger

from feeds.errors import UpstreamMalformedError
from feeds.models import GenerationMix, LoadSnapshot, PricingSnapshot
from feeds.providers.base import (
    ProviderAdapter, accumulate, finite, interval_prices, map_fuel,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REPORTS_BASE_URL = "https://reports-public.ieso.ca/public"
ZONAL_PRICE_URL  = f"{REPORTS_BASE_URL}/RealtimeZonalEnergyPrices/PUB_RealtimeZonalEnergyPrices.xml"
TOTALS_URL       = f"{REPORTS_BASE_URL}/RealtimeTotals/PUB_RealtimeTotals.xml"
GEN_BY_FUEL_URL  = f"{REPORTS_BASE_URL}/GenOutputbyFuelHourly/PUB_GenOutputbyFuelHourly.xml"

IESO_EST = timezone(timedelta(hours=-5), "EST")
INTERVAL = timedelta(minutes=5)
DEMAND_QUANTITY = "ONTARIO DEMAND"

FUEL_MAP: dict[str, Optional[str]] = {
    "nuclear": "nuclear",
    "gas":     "gas",
    "hydro":   "hydro",
    "wind":    "wind",
    "solar":   "solar",
    "biofuel": "biomass",
    "other":   "other",
}


class ZonalPrice(NamedTuple):
    interval_start: datetime
    zone:           str
    price:          Optional[float]


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def parse_document(xml_bytes: bytes) -> ET.Element:
    """Parse a report and return its DocBody."""
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as exc:
        raise UpstreamMalformedError(f"unparseable IESO XML: {exc}") from exc
    body = root.find("{*}DocBody")
    if body is None:
        raise UpstreamMalformedError("IESO report has no DocBody")
    return body


def _text(elem: ET.Element, path: str) -> str:
    return (elem.findtext(path) or "").strip()


def _hour_start(day: str, hour_ending: Optional[float]) -> datetime:
    if hour_ending is None:
        raise UpstreamMalformedError("IESO report has no DeliveryHour")
    try:
        base = datetime.strptime(day, "%Y-%m-%d").replace(tzinfo=IESO_EST)
    except ValueError as exc:
        raise UpstreamMalformedError(f"bad IESO delivery date {day!r}") from exc
    return (base + timedelta(hours=hour_ending - 1)).astimezone(timezone.utc)


def _interval_start(hour_start: datetime, interval: Optional[float]) -> Optional[datetime]:
    if interval is None:
        return None
    return hour_start + INTERVAL * (int(interval) - 1)


def parse_zonal_prices(xml_bytes: bytes) -> list[ZonalPrice]:
    body = parse_document(xml_bytes)
    hour_start = _hour_start(_text(body, "{*}DeliveryDate"), finite(_text(body, "{*}DeliveryHour")))

    prices: list[ZonalPrice] = []
    for zone in body.iterfind(".//{*}TransactionZone"):
        name = _text(zone, "{*}ZoneName")
        for entry in zone.iterfind(".//{*}IntervalPrice"):
            start = _interval_start(hour_start, finite(_text(entry, "{*}Interval")))
            if start is not None:
                prices.append(ZonalPrice(start, name, finite(_text(entry, "{*}ZonalPrice"))))
    return prices


def parse_realtime_demand(xml_bytes: bytes) -> Optional[tuple[datetime, float]]:
    """The latest interval's Ontario demand, or None when no interval reports it."""
    body = parse_document(xml_bytes)
    hour_start = _hour_start(_text(body, "{*}DeliveryDate"), finite(_text(body, "{*}DeliveryHour")))

    latest: Optional[tuple[datetime, float]] = None
    for entry in body.iterfind(".//{*}IntervalEnergy"):
        start = _interval_start(hour_start, finite(_text(entry, "{*}Interval")))
        if start is None:
            continue
        for mq in entry.iterfind(".//{*}MQ"):
            if _text(mq, "{*}MarketQuantity").upper() != DEMAND_QUANTITY:
                continue
            mw = finite(_text(mq, "{*}EnergyMW"))
            if mw is not None and (latest is None or start > latest[0]):
                latest = (start, mw)
    return latest


def _fuel_totals(hourly: ET.Element) -> Iterable[tuple[str, Optional[float]]]:
    for total in hourly.iterfind(".//{*}FuelTotal"):
        yield _text(total, "{*}Fuel"), finite(_text(total, "{*}EnergyValue/{*}Output"))


def parse_fuel_output(xml_bytes: bytes) -> tuple[Optional[datetime], dict[str, float]]:
    """Fuel outputs for the latest hour that reports any output."""
    body = parse_document(xml_bytes)

    latest: tuple[Optional[datetime], dict[str, float]] = (None, {})
    for daily in body.iterfind(".//{*}DailyData"):
        day = _text(daily, "{*}Day")
        for hourly in daily.iterfind(".//{*}HourlyData"):
            fuels: dict[str, float] = {}
            for fuel, mw in _fuel_totals(hourly):
                accumulate(fuels, map_fuel(fuel, FUEL_MAP), mw)
            if not fuels:
                continue
            try:
                start = _hour_start(day, finite(_text(hourly, "{*}Hour")))
            except UpstreamMalformedError:
                continue
            if latest[0] is None or start > latest[0]:
                latest = (start, fuels)
    return latest


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class IesoAdapter(ProviderAdapter):
    provider_id = "ieso"

    async def fetch_pricing(self) -> Optional[PricingSnapshot]:
        rows = parse_zonal_prices(await self._get_bytes(ZONAL_PRICE_URL))
        series = interval_prices(
            ((r.interval_start, r.zone, r.price) for r in rows),
            None,
            self.settings.price_bounds,
        )
        if not series:
            logger.warning("IESO zonal prices: no interval with three plausible zones.")
            return None

        stamp, current, label = series[-1]
        return self.build_pricing(
            current,
            [price for _, price, _ in series],
            timestamp=stamp,
            method="zonal_price",
            price_node=label,
        )

    async def fetch_load(self) -> Optional[LoadSnapshot]:
        latest = parse_realtime_demand(await self._get_bytes(TOTALS_URL))
        if latest is None:
            logger.warning("IESO totals: no ONTARIO DEMAND interval.")
            return None

        stamp, demand = latest
        return self.build_load(demand, timestamp=stamp, method="realtime_totals")

    async def fetch_generation_mix(self) -> Optional[GenerationMix]:
        stamp, fuels = parse_fuel_output(await self._get_bytes(GEN_BY_FUEL_URL))
        return self.build_generation(fuels, timestamp=stamp or self.now(), method="gen_by_fuel")
