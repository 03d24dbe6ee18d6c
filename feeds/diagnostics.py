"""
GridPulse — Connectivity probes for ``?test=<provider id>``.

A probe is an unauthenticated GET against one of the provider's data
endpoints.  It answers "can this process reach the upstream, and what does
the upstream say without credentials?", which is usually what is wrong
when a provider keeps coming back empty.  Probes never go through the
adapters and never touch the token cache.
"""

from __future__ import annotations

import time
from datetime import datetime
from typing import Callable, Optional, Union

import httpx
from loguru import logger
from pydantic import BaseModel

from feeds.models import utc_now
from feeds.providers import aeso, caiso, ercot, ieso, miso, nyiso, pjm, spp
from feeds.providers.base import USER_AGENT

PREVIEW_CHARS = 300
PROBE_TIMEOUT = 10.0

UrlSpec = Union[str, Callable[[datetime], str]]

DIAGNOSTIC_PROBES: dict[str, list[tuple[str, UrlSpec]]] = {
    "ercot": [
        ("spp_node_zone_hub", ercot.SPP_ENDPOINT),
        ("act_sys_load_by_wzn", ercot.LOAD_ENDPOINT),
        ("fuel_mix_dashboard", ercot.FUEL_MIX_URL),
    ],
    "aeso": [
        ("pool_price", aeso.POOL_PRICE_URL),
        ("alberta_internal_load", aeso.LOAD_URL),
        ("current_supply_demand", aeso.CSD_URL),
    ],
    "miso": [
        ("lmp_consolidated", f"{miso.DATA_BROKER_URL}?messageType=getlmpconsolidatedtable&returnType=json"),
        ("total_load", f"{miso.DATA_BROKER_URL}?messageType=gettotalload&returnType=json"),
        ("fuel_mix", f"{miso.DATA_BROKER_URL}?messageType=getfuelmix&returnType=json"),
    ],
    "caiso": [
        ("oasis", caiso.OASIS_URL),
        ("outlook_demand", caiso.DEMAND_CSV_URL),
        ("outlook_fuelsource", caiso.FUEL_CSV_URL),
    ],
    "nyiso": [
        ("realtime_zone", lambda now: nyiso.zone_price_url(now.astimezone(nyiso.NYISO_TIMEZONE))),
        ("pal", lambda now: nyiso.report_url("pal", now.astimezone(nyiso.NYISO_TIMEZONE))),
        ("rtfuelmix", lambda now: nyiso.report_url("rtfuelmix", now.astimezone(nyiso.NYISO_TIMEZONE))),
    ],
    "pjm": [
        ("rt_unverified_hrl_lmps", pjm.LMP_ENDPOINT),
        ("inst_load", pjm.INST_LOAD_ENDPOINT),
        ("gen_by_fuel", pjm.GEN_BY_FUEL_ENDPOINT),
    ],
    "spp": [
        ("rtbm_lmp_latest", spp.LMP_CSV_URL),
        ("load_forecast", spp.LOAD_CSV_URL),
        ("gen_mix", spp.GEN_MIX_CSV_URL),
    ],
    "ieso": [
        ("realtime_zonal_prices", ieso.ZONAL_PRICE_URL),
        ("realtime_totals", ieso.TOTALS_URL),
        ("gen_output_by_fuel", ieso.GEN_BY_FUEL_URL),
    ],
}


class ProbeResult(BaseModel):
    name:           str
    url:            str
    status_code:    Optional[int]
    classification: str
    preview:        str
    elapsed_ms:     int


class DiagnosticReport(BaseModel):
    provider:   str
    checked_at: datetime
    probes:     list[ProbeResult]


def classify(status_code: Optional[int]) -> str:
    if status_code is None:
        return "unreachable"
    if status_code in (401, 403):
        return "requires OAuth"
    if 200 <= status_code < 300:
        return "valid"
    if status_code == 404:
        return "not found"
    if status_code == 429:
        return "rate limited"
    return "error"


async def probe(client: httpx.AsyncClient, name: str, url: str) -> ProbeResult:
    started = time.monotonic()
    try:
        resp = await client.get(url, headers={"User-Agent": USER_AGENT}, timeout=PROBE_TIMEOUT)
        status_code: Optional[int] = resp.status_code
        preview = resp.text[:PREVIEW_CHARS]
    except httpx.HTTPError as exc:
        status_code = None
        preview = f"{type(exc).__name__}: {exc}"[:PREVIEW_CHARS]

    result = ProbeResult(
        name=name,
        url=url,
        status_code=status_code,
        classification=classify(status_code),
        preview=preview,
        elapsed_ms=int((time.monotonic() - started) * 1000),
    )
    logger.info("Probe {} -> {} ({})", name, result.status_code, result.classification)
    return result


async def run_diagnostics(
    client: httpx.AsyncClient,
    provider_id: str,
    now: Optional[datetime] = None,
) -> DiagnosticReport:
    """Probe each endpoint of ``provider_id`` in turn.  Raises KeyError for unknown ids."""
    probes = DIAGNOSTIC_PROBES[provider_id]
    now = now or utc_now()
    results = []
    for name, spec in probes:
        url = spec(now) if callable(spec) else spec
        results.append(await probe(client, name, url))
    return DiagnosticReport(provider=provider_id, checked_at=now, probes=results)
