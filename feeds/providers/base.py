"""
GridPulse — Provider adapter base.

An adapter knows one upstream API: how to ask for a window of data, how to
read that provider's payload shape, and which values are plausible.  It
offers up to three capabilities (pricing, load, generation mix); each is
fetched sequentially with the provider's fixed inter-request delay and
guarded on its own, so a broken price feed never hides a good load feed.

The builders here (build_pricing / build_load / build_generation) apply the
provider's plausibility bounds and derive whatever the upstream does not
publish.  Every snapshot's ``source`` tells consumers whether values were
read from the API or estimated:

    <provider>_api_<method>                   statistics from the fetched window
    <provider>_api_<method>_estimated         average/peak/off-peak scaled from current price
    <provider>_api_<method>_estimated_peak    peak load synthesized as current × 1.15
"""

from __future__ import annotations

import asyncio
import io
import math
from abc import ABC
from collections import defaultdict
from datetime import datetime
from statistics import fmean
from typing import (
    IO, Any, Awaitable, Callable, ClassVar, Iterable, Mapping, Optional, TypeVar, Union,
)

import httpx
import pandas as pd
from loguru import logger
from pydantic import ValidationError

from feeds.config import ProviderSettings
from feeds.errors import UpstreamMalformedError
from feeds.models import (
    GenerationMix, LoadSnapshot, PricingSnapshot, ProviderResult, ProviderStatus, utc_now,
)
from feeds.retry import RetryPolicy
from feeds.token_cache import TokenCache

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

AVERAGE_FROM_CURRENT  = 0.95    # average_price when no window series is available
PEAK_FROM_CURRENT     = 1.40
OFF_PEAK_FROM_CURRENT = 0.70
PEAK_LOAD_FACTOR      = 1.15    # peak_forecast_mw when no forecast/window maximum exists
MIN_NODES_FOR_AVERAGE = 3

CAPABILITIES = ("pricing", "load", "generation_mix")

USER_AGENT = "GridPulse/1.0 (grid-telemetry aggregator)"


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def finite(value: Any) -> Optional[float]:
    """Coerce a raw upstream scalar to float; None for blanks and non-numbers."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def within(value: Optional[float], bounds: tuple[float, float]) -> Optional[float]:
    """Return ``value`` if it lies inside ``bounds``; out-of-range values become absent."""
    if value is None:
        return None
    low, high = bounds
    return value if low <= value <= high else None


def select_system_price(
    points: Iterable[tuple[str, Optional[float]]],
    hub_node: Optional[str],
    bounds: tuple[float, float],
    min_nodes: int = MIN_NODES_FOR_AVERAGE,
) -> Optional[tuple[float, str]]:
    """
    Pick one system price from a set of (node, price) points.

    A plausible price at the canonical hub node wins outright.  Without one,
    the mean of the plausible node prices is used, provided at least
    ``min_nodes`` of them exist.  Returns (price, node label) or None.
    """
    plausible: list[tuple[str, float]] = []
    for node, price in points:
        price = within(price, bounds)
        if price is None:
            continue
        if hub_node is not None and node.strip().upper() == hub_node.upper():
            return price, hub_node
        plausible.append((node, price))

    if len(plausible) >= min_nodes:
        return round(fmean(p for _, p in plausible), 4), "NODE_AVERAGE"
    return None


def interval_prices(
    points: Iterable[tuple[datetime, str, Optional[float]]],
    hub_node: Optional[str],
    bounds: tuple[float, float],
) -> list[tuple[datetime, float, str]]:
    """
    Reduce (interval, node, price) points to one system price per interval.

    Returns (interval, price, node label) tuples in chronological order;
    intervals without a usable price are skipped.
    """
    grouped: dict[datetime, list[tuple[str, Optional[float]]]] = defaultdict(list)
    for interval, node, price in points:
        grouped[interval].append((node, price))

    series: list[tuple[datetime, float, str]] = []
    for interval in sorted(grouped):
        selected = select_system_price(grouped[interval], hub_node, bounds)
        if selected is not None:
            series.append((interval, *selected))
    return series


def read_csv_frame(
    source: Union[str, bytes, IO[bytes]],
    required: Iterable[str],
    *,
    numeric: Iterable[str] = (),
) -> pd.DataFrame:
    """
    Parse a CSV report into a DataFrame with stripped column names.

    Raises UpstreamMalformedError when the body is empty or unparseable or
    when any ``required`` column is missing.  Columns named in ``numeric``
    are coerced with ``errors="coerce"``, so blanks become NaN.
    """
    if isinstance(source, str):
        source = io.StringIO(source)
    elif isinstance(source, bytes):
        source = io.BytesIO(source)
    try:
        df = pd.read_csv(source)
    except (pd.errors.EmptyDataError, pd.errors.ParserError, UnicodeDecodeError) as exc:
        raise UpstreamMalformedError(f"unreadable CSV: {exc}") from exc

    df.columns = [str(c).strip() for c in df.columns]
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise UpstreamMalformedError(f"CSV lacks columns {missing}")
    for col in numeric:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")
    return df


def map_fuel(raw: str, mapping: Mapping[str, Optional[str]]) -> Optional[str]:
    """
    Translate an upstream fuel label to a canonical fuel key.

    Labels missing from ``mapping`` land in "other"; labels mapped to None
    (imports, storage charging) are not generation and are dropped.
    """
    key = raw.strip().lower()
    if key in mapping:
        return mapping[key]
    return "other"


# ---------------------------------------------------------------------------
# Adapter base
# ---------------------------------------------------------------------------


class ProviderAdapter(ABC):
    """
    Base class for one grid operator.

    Subclasses override any of ``fetch_pricing``, ``fetch_load`` and
    ``fetch_generation_mix``; capabilities left at the base implementation
    are simply not requested.  Each returns a snapshot or None.
    """

    provider_id:    ClassVar[str]
    requires_oauth: ClassVar[bool] = False

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: ProviderSettings,
        credentials: Optional[Mapping[str, str]] = None,
        *,
        bearer_token: Optional[str] = None,
        token_cache: Optional[TokenCache] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self.settings = settings
        self.credentials = dict(credentials or {})
        self.bearer_token = bearer_token
        self.token_cache = token_cache
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock
        self._sleep = sleep
        self.extras: dict[str, Any] = {}

    # ------------------------------------------------------------------
    # Capabilities (override in subclasses)
    # ------------------------------------------------------------------

    async def fetch_pricing(self) -> Optional[PricingSnapshot]:
        return None

    async def fetch_load(self) -> Optional[LoadSnapshot]:
        return None

    async def fetch_generation_mix(self) -> Optional[GenerationMix]:
        return None

    @classmethod
    def capabilities(cls) -> list[str]:
        """The capabilities this adapter actually implements, in fetch order."""
        return [
            name for name in CAPABILITIES
            if getattr(cls, f"fetch_{name}") is not getattr(ProviderAdapter, f"fetch_{name}")
        ]

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def fetch(self) -> ProviderResult:
        """Run every capability in turn, pausing between sub-requests."""
        values: dict[str, Any] = {}
        capabilities = self.capabilities()
        for index, name in enumerate(capabilities):
            if index and self.settings.inter_request_delay > 0:
                await self._sleep(self.settings.inter_request_delay)
            values[name] = await self._guarded(name, getattr(self, f"fetch_{name}"))

        present = sum(1 for v in values.values() if v is not None)
        status = ProviderStatus.SUCCESS if present == len(capabilities) else ProviderStatus.PARTIAL
        logger.info(
            "{} fetched {}/{} metrics ({}).",
            self.label, present, len(capabilities),
            ", ".join(n for n, v in values.items() if v is not None) or "none",
        )
        return ProviderResult(
            pricing=values.get("pricing"),
            load=values.get("load"),
            generation_mix=values.get("generation_mix"),
            extras=dict(self.extras),
            status=status,
        )

    async def _guarded(self, metric: str, fn: Callable[[], Awaitable[Optional[T]]]) -> Optional[T]:
        """Run one capability; upstream and shape errors make only that metric absent."""
        try:
            return await fn()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "{} {} unavailable: HTTP {} from {}",
                self.label, metric, exc.response.status_code, exc.request.url,
            )
        except httpx.HTTPError as exc:
            logger.warning("{} {} request failed: {!r}", self.label, metric, exc)
        except UpstreamMalformedError as exc:
            logger.warning("{} {} payload malformed: {}", self.label, metric, exc)
        except ValidationError as exc:
            logger.warning("{} {} failed canonical validation: {}", self.label, metric, exc)
        except Exception:
            logger.exception("{} {} parser failed on an unexpected payload shape", self.label, metric)
        return None

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    @property
    def label(self) -> str:
        return self.settings.display_name

    def now(self) -> datetime:
        return self._clock()

    def auth_headers(self) -> dict[str, str]:
        """Headers carrying this provider's credentials; none by default."""
        return {}

    async def _get(
        self,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        merged = {"User-Agent": USER_AGENT, **self.auth_headers(), **(headers or {})}
        logger.debug("{} GET {} params={}", self.label, url, params)
        resp = await self._client.get(url, params=params, headers=merged)
        resp.raise_for_status()
        return resp

    async def _get_json(self, url: str, **kwargs: Any) -> Any:
        resp = await self._get(url, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamMalformedError(f"non-JSON body from {url}") from exc

    async def _get_text(self, url: str, **kwargs: Any) -> str:
        return (await self._get(url, **kwargs)).text

    async def _get_bytes(self, url: str, **kwargs: Any) -> bytes:
        return (await self._get(url, **kwargs)).content

    # ------------------------------------------------------------------
    # Canonical builders
    # ------------------------------------------------------------------

    def build_pricing(
        self,
        current: Optional[float],
        window: Iterable[Optional[float]] = (),
        *,
        timestamp: datetime,
        method: str,
        price_node: Optional[str] = None,
    ) -> Optional[PricingSnapshot]:
        bounds = self.settings.price_bounds
        price = within(current, bounds)
        if price is None:
            logger.warning("{} current price {} outside {}; dropped.", self.label, current, bounds)
            return None

        series = [p for p in (within(v, bounds) for v in window) if p is not None]
        if len(series) >= 2:
            average = fmean(series)
            peak = max(max(series), price)
            off_peak = min(min(series), price)
            source = f"{self.provider_id}_api_{method}"
        else:
            average = price * AVERAGE_FROM_CURRENT
            peak = max(price, price * PEAK_FROM_CURRENT)
            off_peak = min(price, price * OFF_PEAK_FROM_CURRENT)
            source = f"{self.provider_id}_api_{method}_estimated"

        return PricingSnapshot(
            current_price=round(price, 4),
            average_price=round(average, 4),
            peak_price=round(peak, 4),
            off_peak_price=round(off_peak, 4),
            timestamp=timestamp,
            source=source,
            baseline_price=self.settings.baseline_price,
            price_node=price_node,
        )

    def build_load(
        self,
        current: Optional[float],
        window: Iterable[Optional[float]] = (),
        *,
        timestamp: datetime,
        method: str,
        capacity_mw: Optional[float] = None,
    ) -> Optional[LoadSnapshot]:
        bounds = self.settings.load_bounds
        demand = within(current, bounds)
        if demand is None:
            logger.warning("{} demand {} outside {}; dropped.", self.label, current, bounds)
            return None

        observed = [v for v in (within(w, bounds) for w in window) if v is not None]
        if observed:
            peak = max(max(observed), demand)
            source = f"{self.provider_id}_api_{method}"
        else:
            peak = demand * PEAK_LOAD_FACTOR
            source = f"{self.provider_id}_api_{method}_estimated_peak"

        if capacity_mw is not None and capacity_mw > 0:
            reserve = (capacity_mw - peak) / peak * 100
        else:
            reserve = self.settings.reserve_margin_pct

        return LoadSnapshot(
            current_demand_mw=round(demand, 2),
            peak_forecast_mw=round(peak, 2),
            reserve_margin_pct=round(reserve, 2),
            timestamp=timestamp,
            source=source,
        )

    def build_generation(
        self,
        fuels: Mapping[str, float],
        *,
        timestamp: datetime,
        method: str,
    ) -> Optional[GenerationMix]:
        positive = {fuel: mw for fuel, mw in fuels.items() if mw > 0}
        if not positive:
            logger.warning("{} generation mix empty.", self.label)
            return None
        total = sum(positive.values())
        if within(total, self.settings.generation_bounds) is None:
            logger.warning(
                "{} total generation {:.0f} MW outside {}; dropped.",
                self.label, total, self.settings.generation_bounds,
            )
            return None
        return GenerationMix.from_fuels(
            positive, timestamp=timestamp, source=f"{self.provider_id}_api_{method}",
        )


def accumulate(fuels: dict[str, float], fuel: Optional[str], mw: Optional[float]) -> None:
    """Add ``mw`` to ``fuels[fuel]``; dropped fuels, blanks and net consumption are ignored."""
    if fuel is None or mw is None or mw <= 0:
        return
    fuels[fuel] = fuels.get(fuel, 0.0) + mw
