"""
GridPulse — PJM Data Miner 2 adapter.

Real API base:  https://api.pjm.com/api/v1/
Authentication: ``Ocp-Apim-Subscription-Key`` header (PJM_API_KEY)

Responses are paginated: each page carries ``items`` plus a ``links`` list,
and the link with rel "next" (when present) is the complete URL of the
following page.

Feeds used
----------
rt_unverified_hrl_lmps   hourly real-time LMPs for zones and PJM-RTO
inst_load                instantaneous load by area, 5-minute resolution
gen_by_fuel              hourly generation by fuel type

Every item has ``datetime_beginning_utc`` ("2024-05-01T14:00:00", naive UTC)
next to the Eastern ``datetime_beginning_ept``; only the UTC column is read.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, NamedTuple, Optional
from zoneinfo import ZoneInfo

from loguru import logger

from feeds.errors import UpstreamMalformedError
from feeds.models import GenerationMix, LoadSnapshot, PricingSnapshot
from feeds.providers.base import (
    ProviderAdapter, accumulate, finite, interval_prices, map_fuel,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

API_BASE_URL         = "https://api.pjm.com/api/v1"
LMP_ENDPOINT         = f"{API_BASE_URL}/rt_unverified_hrl_lmps"
INST_LOAD_ENDPOINT   = f"{API_BASE_URL}/inst_load"
GEN_BY_FUEL_ENDPOINT = f"{API_BASE_URL}/gen_by_fuel"

PJM_TIMEZONE  = ZoneInfo("America/New_York")
ROWS_PER_PAGE = 500
MAX_PAGES     = 20
RTO_AREA      = "PJM RTO"

PRICE_WINDOW = timedelta(hours=24)
LOAD_WINDOW  = timedelta(hours=24)
GEN_WINDOW   = timedelta(hours=3)

FUEL_MAP: dict[str, Optional[str]] = {
    "coal":             "coal",
    "gas":              "gas",
    "oil":              "other",
    "multiple fuels":   "other",
    "hydro":            "hydro",
    "nuclear":          "nuclear",
    "solar":            "solar",
    "wind":             "wind",
    "other renewables": "biomass",
    "other":            "other",
    "storage":          None,
}


class PjmRow(NamedTuple):
    at:    datetime
    name:  str
    value: Optional[float]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _pjm_datetime_str(dt: datetime) -> str:
    """Format a datetime as the string PJM expects: 'YYYY-MM-DD HH:MM' (Eastern)."""
    return dt.astimezone(PJM_TIMEZONE).strftime("%Y-%m-%d %H:%M")


def window_param(end: datetime, span: timedelta) -> str:
    return f"{_pjm_datetime_str(end - span)} to {_pjm_datetime_str(end)}"


def next_page_url(body: Mapping[str, Any]) -> Optional[str]:
    return next(
        (
            lnk.get("href") for lnk in body.get("links") or []
            if isinstance(lnk, dict) and lnk.get("rel") == "next"
        ),
        None,
    )


def parse_items(items: list[Any], name_field: str, value_field: str) -> list[PjmRow]:
    """Typed rows from Data Miner items; rows without a UTC timestamp are skipped."""
    rows: list[PjmRow] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        raw = str(item.get("datetime_beginning_utc") or "").replace("Z", "")
        try:
            at = datetime.fromisoformat(raw).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
        rows.append(PjmRow(at, str(item.get(name_field, "")).strip(), finite(item.get(value_field))))
    return rows


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class PjmAdapter(ProviderAdapter):
    provider_id = "pjm"

    def auth_headers(self) -> dict[str, str]:
        return {"Ocp-Apim-Subscription-Key": self.credentials.get("api_key", "")}

    async def _fetch_all_pages(self, url: str, params: dict[str, Any]) -> list[Any]:
        """
        Async paginator for Data Miner feeds.

        Follows the 'next' link in each response's 'links' list until all
        rows are retrieved or MAX_PAGES is reached.
        """
        all_items: list[Any] = []
        current_url: Optional[str] = url
        current_params: Optional[dict] = params
        pages = 0

        while current_url and pages < MAX_PAGES:
            body = await self._get_json(current_url, params=current_params)
            if not isinstance(body, dict) or not isinstance(body.get("items"), list):
                raise UpstreamMalformedError(f"page {pages + 1} of {url} lacks 'items'")
            all_items.extend(body["items"])
            pages += 1

            logger.debug(
                "PJM paginating {}: {}/{} rows",
                url.rsplit("/", 1)[-1], len(all_items), body.get("totalRows", len(all_items)),
            )
            current_url = next_page_url(body)
            current_params = None  # next URL already encodes all params

        return all_items

    def _params(self, span: timedelta, fields: str, **extra: Any) -> dict[str, Any]:
        return {
            "startRow":               1,
            "rowCount":               ROWS_PER_PAGE,
            "datetime_beginning_ept": window_param(self.now(), span),
            "fields":                 fields,
            "sort":                   "datetime_beginning_utc",
            "order":                  1,
            **extra,
        }

    async def fetch_pricing(self) -> Optional[PricingSnapshot]:
        items = await self._fetch_all_pages(LMP_ENDPOINT, self._params(
            PRICE_WINDOW,
            "datetime_beginning_utc,pnode_name,type,total_lmp_rt",
            type="ZONE",
        ))
        rows = parse_items(items, "pnode_name", "total_lmp_rt")
        series = interval_prices(
            ((r.at, r.name, r.value) for r in rows),
            self.settings.hub_node,
            self.settings.price_bounds,
        )
        if not series:
            logger.warning("PJM LMP: no hour with a usable RTO or zonal price.")
            return None

        stamp, current, node = series[-1]
        return self.build_pricing(
            current,
            [price for _, price, _ in series],
            timestamp=stamp,
            method="rt_lmp",
            price_node=node,
        )

    async def fetch_load(self) -> Optional[LoadSnapshot]:
        items = await self._fetch_all_pages(INST_LOAD_ENDPOINT, self._params(
            LOAD_WINDOW,
            "datetime_beginning_utc,area,instantaneous_load",
            area=RTO_AREA,
        ))
        rows = sorted(
            (r for r in parse_items(items, "area", "instantaneous_load")
             if r.name.upper() == RTO_AREA and r.value is not None),
            key=lambda r: r.at,
        )
        if not rows:
            logger.warning("PJM inst_load: no RTO readings in window.")
            return None

        latest = rows[-1]
        return self.build_load(
            latest.value,
            [r.value for r in rows],
            timestamp=latest.at,
            method="inst_load",
        )

    async def fetch_generation_mix(self) -> Optional[GenerationMix]:
        items = await self._fetch_all_pages(GEN_BY_FUEL_ENDPOINT, self._params(
            GEN_WINDOW,
            "datetime_beginning_utc,fuel_type,mw",
        ))
        rows = parse_items(items, "fuel_type", "mw")
        if not rows:
            logger.warning("PJM gen_by_fuel: no rows in window.")
            return None

        latest = max(r.at for r in rows)
        fuels: dict[str, float] = {}
        for row in rows:
            if row.at == latest:
                accumulate(fuels, map_fuel(row.name, FUEL_MAP), row.value)
        return self.build_generation(fuels, timestamp=latest, method="gen_by_fuel")
