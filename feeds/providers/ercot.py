"""
GridPulse — ERCOT adapter.

Real API base:  https://api.ercot.com/api/public-reports
Dashboard feed: https://www.ercot.com/api/1/services/read/dashboards/fuel-mix.json

Authentication
--------------
Every public-reports call needs two headers: the APIM subscription key and
a bearer token from the Azure B2C ROPC flow (see feeds/token_cache.py).  The
orchestrator resolves the token before the adapter runs.  A 401 drops the
cached token so the next invocation re-authenticates.

Payload shape
-------------
Public-reports responses are positional:

    {"fields": [{"name": "deliveryDate"}, {"name": "deliveryHour"}, ...],
     "data":   [["2024-05-01", 14, 2, "HB_HUBAVG", "AH", 42.17, false], ...]}

Column positions are resolved from ``fields`` when present and fall back to
the documented layout otherwise.

Pricing: Real-Time SPP (np6-905-cd), 15-minute intervals.  HB_HUBAVG is the
system-wide hub average and wins over any node statistics.
Load:    Actual system load by weather zone (np6-345-cd), hourly; "total".
Mix:     Public dashboard fuel-mix JSON, 5-minute resolution; no auth.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, NamedTuple, Optional, Sequence
from zoneinfo import ZoneInfo

import httpx
from loguru import logger

from feeds.errors import UpstreamMalformedError
from feeds.models import GenerationMix, LoadSnapshot, PricingSnapshot
from feeds.providers.base import (
    ProviderAdapter, accumulate, finite, interval_prices, map_fuel,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

API_BASE_URL      = "https://api.ercot.com/api/public-reports"
SPP_ENDPOINT      = f"{API_BASE_URL}/np6-905-cd/spp_node_zone_hub"
LOAD_ENDPOINT     = f"{API_BASE_URL}/np6-345-cd/act_sys_load_by_wzn"
FUEL_MIX_URL      = "https://www.ercot.com/api/1/services/read/dashboards/fuel-mix.json"

ERCOT_TIMEZONE    = ZoneInfo("America/Chicago")
PAGE_SIZE         = 10_000

# Documented positional layouts, used when a response omits "fields"
SPP_COLUMNS = {
    "deliveryDate": 0, "deliveryHour": 1, "deliveryInterval": 2,
    "settlementPoint": 3, "settlementPointType": 4, "settlementPointPrice": 5,
}
LOAD_COLUMNS = {"operatingDay": 0, "hourEnding": 1, "total": 10}

FUEL_MAP: dict[str, Optional[str]] = {
    "natural gas":     "gas",
    "coal and lignite": "coal",
    "coal":            "coal",
    "nuclear":         "nuclear",
    "wind":            "wind",
    "solar":           "solar",
    "hydro":           "hydro",
    "biomass":         "biomass",
    "power storage":   None,
    "other":           "other",
}


class SppPoint(NamedTuple):
    interval_start: datetime   # UTC
    node:           str
    price:          Optional[float]


class LoadPoint(NamedTuple):
    hour_start: datetime       # UTC
    total_mw:   Optional[float]


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def _column_indices(payload: Any, defaults: dict[str, int]) -> dict[str, int]:
    """Resolve column positions from the response's ``fields`` list."""
    fields = payload.get("fields") if isinstance(payload, dict) else None
    if not isinstance(fields, list) or not fields:
        return dict(defaults)
    names = [f.get("name") if isinstance(f, dict) else None for f in fields]
    missing = [name for name in defaults if name not in names]
    if missing:
        raise UpstreamMalformedError(f"fields list lacks {missing}")
    return {name: names.index(name) for name in defaults}


def _rows(payload: Any) -> list[Sequence[Any]]:
    rows = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(rows, list):
        raise UpstreamMalformedError("expected a 'data' array of positional rows")
    return [row for row in rows if isinstance(row, (list, tuple))]


def _local_to_utc(day: str, hours: float) -> datetime:
    base = datetime.strptime(day[:10], "%Y-%m-%d").replace(tzinfo=ERCOT_TIMEZONE)
    return (base + timedelta(hours=hours)).astimezone(ZoneInfo("UTC"))


def parse_spp_payload(payload: Any) -> list[SppPoint]:
    """Read settlement point prices from a positional public-reports payload."""
    cols = _column_indices(payload, SPP_COLUMNS)
    width = max(cols.values()) + 1
    points: list[SppPoint] = []
    skipped = 0
    for row in _rows(payload):
        if len(row) < width:
            skipped += 1
            continue
        hour = finite(row[cols["deliveryHour"]])
        interval = finite(row[cols["deliveryInterval"]])
        if hour is None or interval is None:
            skipped += 1
            continue
        try:
            start = _local_to_utc(
                str(row[cols["deliveryDate"]]),
                (hour - 1) + (interval - 1) * 0.25,
            )
        except ValueError:
            skipped += 1
            continue
        points.append(SppPoint(
            interval_start=start,
            node=str(row[cols["settlementPoint"]]),
            price=finite(row[cols["settlementPointPrice"]]),
        ))
    if skipped:
        logger.debug("ERCOT SPP: skipped {} short or undated rows.", skipped)
    return points


def _hour_ending(raw: Any) -> Optional[float]:
    """'14:00' or 14 -> 14.0"""
    if isinstance(raw, str) and ":" in raw:
        raw = raw.split(":", 1)[0]
    return finite(raw)


def parse_load_payload(payload: Any) -> list[LoadPoint]:
    """Read hourly system load totals from a positional public-reports payload."""
    cols = _column_indices(payload, LOAD_COLUMNS)
    width = max(cols.values()) + 1
    points: list[LoadPoint] = []
    for row in _rows(payload):
        if len(row) < width:
            continue
        hour_ending = _hour_ending(row[cols["hourEnding"]])
        if hour_ending is None:
            continue
        try:
            start = _local_to_utc(str(row[cols["operatingDay"]]), hour_ending - 1)
        except ValueError:
            continue
        points.append(LoadPoint(hour_start=start, total_mw=finite(row[cols["total"]])))
    return sorted(points, key=lambda p: p.hour_start)


def parse_fuel_mix(payload: Any) -> tuple[datetime, dict[str, float]]:
    """Latest interval of the dashboard fuel-mix feed as (timestamp, canonical fuels)."""
    days = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(days, dict) or not days:
        raise UpstreamMalformedError("fuel-mix payload has no 'data' object")
    intervals = days[max(days)]
    if not isinstance(intervals, dict) or not intervals:
        raise UpstreamMalformedError("fuel-mix day has no intervals")

    latest_key = max(intervals)
    try:
        stamp = datetime.strptime(latest_key, "%Y-%m-%d %H:%M:%S%z")
    except ValueError as exc:
        raise UpstreamMalformedError(f"unparseable fuel-mix interval {latest_key!r}") from exc

    readings = intervals[latest_key]
    if not isinstance(readings, dict):
        raise UpstreamMalformedError(f"fuel-mix interval {latest_key!r} is not an object")

    fuels: dict[str, float] = {}
    for label, reading in readings.items():
        mw = finite(reading.get("gen")) if isinstance(reading, dict) else finite(reading)
        accumulate(fuels, map_fuel(label, FUEL_MAP), mw)
    return stamp.astimezone(ZoneInfo("UTC")), fuels


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class ErcotAdapter(ProviderAdapter):
    provider_id = "ercot"
    requires_oauth = True

    def auth_headers(self) -> dict[str, str]:
        headers = {"Ocp-Apim-Subscription-Key": self.credentials.get("api_key", "")}
        if self.bearer_token:
            headers["Authorization"] = f"Bearer {self.bearer_token}"
        return headers

    async def _get(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await super()._get(url, **kwargs)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 401 and self.token_cache is not None:
                self.token_cache.invalidate()
            raise

    def _date_window(self) -> tuple[str, str]:
        today = self.now().astimezone(ERCOT_TIMEZONE).date()
        return (today - timedelta(days=1)).isoformat(), today.isoformat()

    async def fetch_pricing(self) -> Optional[PricingSnapshot]:
        yesterday, today = self._date_window()
        payload = await self._get_json(SPP_ENDPOINT, params={
            "deliveryDateFrom": yesterday,
            "deliveryDateTo":   today,
            "size":             PAGE_SIZE,
        })
        points = parse_spp_payload(payload)
        series = interval_prices(
            ((p.interval_start, p.node, p.price) for p in points),
            self.settings.hub_node,
            self.settings.price_bounds,
        )
        if not series:
            logger.warning("ERCOT SPP: no interval with a usable system price.")
            return None

        stamp, current, node = series[-1]
        self.extras["price_interval_count"] = len(series)
        return self.build_pricing(
            current,
            [price for _, price, _ in series],
            timestamp=stamp,
            method="spp",
            price_node=node,
        )

    async def fetch_load(self) -> Optional[LoadSnapshot]:
        yesterday, today = self._date_window()
        payload = await self._get_json(LOAD_ENDPOINT, params={
            "operatingDayFrom": yesterday,
            "operatingDayTo":   today,
            "size":             PAGE_SIZE,
        })
        points = [p for p in parse_load_payload(payload) if p.total_mw is not None]
        if not points:
            logger.warning("ERCOT load: no hourly totals in window.")
            return None

        latest = points[-1]
        return self.build_load(
            latest.total_mw,
            [p.total_mw for p in points],
            timestamp=latest.hour_start,
            method="load",
        )

    async def fetch_generation_mix(self) -> Optional[GenerationMix]:
        # The dashboard feed is public; send no API credentials to it.
        resp = await self._client.get(FUEL_MIX_URL, headers={"Accept": "application/json"})
        resp.raise_for_status()
        try:
            payload = resp.json()
        except ValueError as exc:
            raise UpstreamMalformedError("fuel-mix body is not JSON") from exc
        stamp, fuels = parse_fuel_mix(payload)
        return self.build_generation(fuels, timestamp=stamp, method="fuel_mix")
