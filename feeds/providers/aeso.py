"""
GridPulse — AESO (Alberta) adapter.

Real API gateway: https://apimgw.aeso.ca/public
Authentication:   ``API-KEY`` header (AESO_API_KEY, fallback AESO_SUB_KEY)

Reports used
------------
Pool Price      poolprice-api/v1.1/price/poolPrice
                {"return": {"Pool Price Report": [
                    {"begin_datetime_utc": "2024-05-01 14:00",
                     "pool_price": "52.31", "forecast_pool_price": "49.80",
                     "rolling_30day_avg": "61.02"}, ...]}}
                The current hour is published with ``pool_price`` == "" until
                it settles; early in the day the report can contain no
                settled hour at all, so this call goes through RetryPolicy.
Internal Load   actualforecast-api/v1/load/albertaInternalLoad
                {"return": {"Actual Forecast Report": [
                    {"begin_datetime_utc": ..., "alberta_internal_load": "9876",
                     "forecast_alberta_internal_load": "10012"}, ...]}}
Supply/Demand   currentsupplydemand-api/v2/csd/summary/current
                {"return": {"last_updated_datetime_utc": "2024-05-01 14:32",
                            "generation_data_list": [{"fuel_type": "GAS",
                                "aggregated_net_generation": 6120, ...}]}}

All values are Alberta Mountain time on the wire except the *_utc columns,
which are the ones read here.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple, Optional
from zoneinfo import ZoneInfo

from loguru import logger

from feeds.errors import UpstreamMalformedError
from feeds.models import GenerationMix, LoadSnapshot, PricingSnapshot
from feeds.providers.base import ProviderAdapter, accumulate, finite, map_fuel

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

API_BASE_URL   = "https://apimgw.aeso.ca/public"
POOL_PRICE_URL = f"{API_BASE_URL}/poolprice-api/v1.1/price/poolPrice"
LOAD_URL       = f"{API_BASE_URL}/actualforecast-api/v1/load/albertaInternalLoad"
CSD_URL        = f"{API_BASE_URL}/currentsupplydemand-api/v2/csd/summary/current"

AESO_TIMEZONE  = ZoneInfo("America/Edmonton")
STAMP_FORMAT   = "%Y-%m-%d %H:%M"

FUEL_MAP: dict[str, Optional[str]] = {
    "gas":            "gas",
    "dual fuel":      "gas",
    "coal":           "coal",
    "hydro":          "hydro",
    "wind":           "wind",
    "solar":          "solar",
    "other":          "other",
    "energy storage": None,
}


class PoolPricePoint(NamedTuple):
    hour_start:        datetime
    pool_price:        Optional[float]
    forecast_price:    Optional[float]
    rolling_30day_avg: Optional[float]


class LoadPoint(NamedTuple):
    hour_start:    datetime
    actual_mw:     Optional[float]
    forecast_mw:   Optional[float]


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def _report(payload: Any, name: str) -> list[dict]:
    body = payload.get("return") if isinstance(payload, dict) else None
    if not isinstance(body, dict) or not isinstance(body.get(name), list):
        raise UpstreamMalformedError(f"response lacks return[{name!r}]")
    return [row for row in body[name] if isinstance(row, dict)]


def _utc_stamp(raw: Any) -> Optional[datetime]:
    if not isinstance(raw, str):
        return None
    try:
        return datetime.strptime(raw.strip(), STAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def parse_pool_price(payload: Any) -> list[PoolPricePoint]:
    points = []
    for row in _report(payload, "Pool Price Report"):
        stamp = _utc_stamp(row.get("begin_datetime_utc"))
        if stamp is None:
            continue
        points.append(PoolPricePoint(
            hour_start=stamp,
            pool_price=finite(row.get("pool_price")),
            forecast_price=finite(row.get("forecast_pool_price")),
            rolling_30day_avg=finite(row.get("rolling_30day_avg")),
        ))
    return sorted(points, key=lambda p: p.hour_start)


def has_settled_price(points: list[PoolPricePoint]) -> bool:
    return any(p.pool_price is not None for p in points)


def parse_internal_load(payload: Any) -> list[LoadPoint]:
    points = []
    for row in _report(payload, "Actual Forecast Report"):
        stamp = _utc_stamp(row.get("begin_datetime_utc"))
        if stamp is None:
            continue
        points.append(LoadPoint(
            hour_start=stamp,
            actual_mw=finite(row.get("alberta_internal_load")),
            forecast_mw=finite(row.get("forecast_alberta_internal_load")),
        ))
    return sorted(points, key=lambda p: p.hour_start)


def parse_supply_demand(payload: Any) -> tuple[Optional[datetime], dict[str, float]]:
    body = payload.get("return") if isinstance(payload, dict) else None
    if not isinstance(body, dict) or not isinstance(body.get("generation_data_list"), list):
        raise UpstreamMalformedError("response lacks return.generation_data_list")

    fuels: dict[str, float] = {}
    for row in body["generation_data_list"]:
        if not isinstance(row, dict) or "fuel_type" not in row:
            continue
        accumulate(
            fuels,
            map_fuel(str(row["fuel_type"]), FUEL_MAP),
            finite(row.get("aggregated_net_generation")),
        )
    return _utc_stamp(body.get("last_updated_datetime_utc")), fuels


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class AesoAdapter(ProviderAdapter):
    provider_id = "aeso"

    def auth_headers(self) -> dict[str, str]:
        return {"API-KEY": self.credentials.get("api_key", "")}

    def _report_window(self) -> dict[str, str]:
        today = self.now().astimezone(AESO_TIMEZONE).date()
        return {
            "startDate": (today - timedelta(days=1)).isoformat(),
            "endDate":   today.isoformat(),
        }

    async def fetch_pricing(self) -> Optional[PricingSnapshot]:
        async def pull() -> list[PoolPricePoint]:
            return parse_pool_price(
                await self._get_json(POOL_PRICE_URL, params=self._report_window())
            )

        points = await self.retry_policy.execute(
            pull, has_settled_price, label=f"{self.label} pool price",
        )
        settled = [p for p in points if p.pool_price is not None]
        if not settled:
            logger.warning("AESO pool price: no settled hour in report.")
            return None

        latest = settled[-1]
        if latest.rolling_30day_avg is not None:
            self.extras["rolling_30day_avg"] = latest.rolling_30day_avg
        return self.build_pricing(
            latest.pool_price,
            [p.pool_price for p in settled],
            timestamp=latest.hour_start,
            method="pool_price",
        )

    async def fetch_load(self) -> Optional[LoadSnapshot]:
        points = parse_internal_load(
            await self._get_json(LOAD_URL, params=self._report_window())
        )
        actuals = [p for p in points if p.actual_mw is not None]
        if not actuals:
            logger.warning("AESO load: no actual internal load in report.")
            return None

        latest = actuals[-1]
        # Forecasts for the remaining hours count toward the peak.
        window = [p.actual_mw for p in actuals] + [
            p.forecast_mw for p in points if p.hour_start > latest.hour_start
        ]
        return self.build_load(
            latest.actual_mw,
            window,
            timestamp=latest.hour_start,
            method="internal_load",
        )

    async def fetch_generation_mix(self) -> Optional[GenerationMix]:
        stamp, fuels = parse_supply_demand(await self._get_json(CSD_URL))
        return self.build_generation(fuels, timestamp=stamp or self.now(), method="csd")
