"""
GridPulse — Concurrent fetch orchestration.

One invocation starts one task per configured provider and waits until each
has settled: produced a result, hit its own deadline, or failed.  Nothing
a provider does can fail the invocation; the only invocation-level failure
is a provider table that cannot be turned into tasks (OrchestrationError).

Deadlines abandon work instead of cancelling it.  The fetch keeps running
in the background (so a late token exchange still populates the cache) but
its result is discarded.  Stragglers are held in ``abandoned`` and
cancelled on shutdown.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Awaitable, Callable, Mapping, Optional

import httpx
from loguru import logger

from feeds.config import AppSettings, ProviderSettings, resolve_credentials
from feeds.errors import OrchestrationError, TokenExchangeError
from feeds.models import AggregateResult, ProviderResult, ProviderStatus, utc_now
from feeds.providers import PROVIDER_ADAPTERS, ProviderAdapter
from feeds.retry import RetryPolicy
from feeds.token_cache import TokenCache


class FetchOrchestrator:
    """
    Run every provider concurrently under its own deadline.

    Parameters
    ----------
    client:       Shared httpx client handed to every adapter.
    settings:     Provider table and retry/token configuration.
    token_cache:  Process-lifetime cache for providers that need OAuth.
    adapters:     provider id -> adapter class; defaults to the full registry.
    environ:      Credential source; ``os.environ`` when None.
    clock/sleep:  Injected into adapters and the retry policy for tests.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: AppSettings,
        token_cache: TokenCache,
        retry_policy: Optional[RetryPolicy] = None,
        adapters: Mapping[str, type[ProviderAdapter]] = PROVIDER_ADAPTERS,
        environ: Optional[Mapping[str, str]] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self.settings = settings
        self.token_cache = token_cache
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            sleep=sleep,
        )
        self._adapters = adapters
        self._environ = environ
        self._clock = clock
        self._sleep = sleep
        self.abandoned: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run_all(self) -> AggregateResult:
        """Fetch every provider; never raises for a provider-level failure."""
        plan = self._plan()
        started = time.monotonic()

        settled = await asyncio.gather(
            *(self._run_provider(cfg, adapter_cls) for cfg, adapter_cls in plan),
            return_exceptions=True,
        )

        results: dict[str, ProviderResult] = {}
        for (cfg, _), outcome in zip(plan, settled):
            if isinstance(outcome, BaseException):
                logger.error("{} task ended abnormally: {!r}", cfg.display_name, outcome)
                outcome = ProviderResult(status=ProviderStatus.FAILED)
            results[cfg.provider_id] = outcome

        aggregate = AggregateResult(results=results)
        logger.info(
            "Aggregation settled in {:.2f}s | {}",
            time.monotonic() - started,
            ", ".join(f"{pid}={status}" for pid, status in aggregate.statuses().items()),
        )
        return aggregate

    def _plan(self) -> list[tuple[ProviderSettings, type[ProviderAdapter]]]:
        if not self.settings.providers:
            raise OrchestrationError("no providers configured")
        missing = [pid for pid in self.settings.providers if pid not in self._adapters]
        if missing:
            raise OrchestrationError(f"no adapter registered for: {', '.join(missing)}")
        return [
            (cfg, self._adapters[pid]) for pid, cfg in self.settings.providers.items()
        ]

    # ------------------------------------------------------------------
    # Per-provider task
    # ------------------------------------------------------------------

    async def _run_provider(
        self,
        cfg: ProviderSettings,
        adapter_cls: type[ProviderAdapter],
    ) -> ProviderResult:
        credentials = resolve_credentials(cfg, self._environ)
        if credentials is None:
            logger.debug("{} skipped: credentials not configured.", cfg.display_name)
            return ProviderResult(status=ProviderStatus.NOT_CONFIGURED)

        logger.debug("{} fetching (deadline {:.0f}s).", cfg.display_name, cfg.timeout_seconds)
        task = asyncio.ensure_future(self._fetch(cfg, adapter_cls, credentials))
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=cfg.timeout_seconds)
        except asyncio.TimeoutError:
            self._abandon(task)
            logger.warning(
                "{} exceeded its {:.0f}s deadline; result abandoned.",
                cfg.display_name, cfg.timeout_seconds,
            )
            return ProviderResult(status=ProviderStatus.TIMED_OUT)
        except Exception:
            logger.exception("{} fetch crashed.", cfg.display_name)
            return ProviderResult(status=ProviderStatus.FAILED)

    async def _fetch(
        self,
        cfg: ProviderSettings,
        adapter_cls: type[ProviderAdapter],
        credentials: dict[str, str],
    ) -> ProviderResult:
        bearer_token: Optional[str] = None
        if adapter_cls.requires_oauth:
            try:
                bearer_token = await self.token_cache.get_token(
                    credentials["username"], credentials["password"],
                )
            except TokenExchangeError as exc:
                logger.error("{} authentication failed: {}", cfg.display_name, exc)
                return ProviderResult(status=ProviderStatus.AUTH_FAILED)

        adapter = adapter_cls(
            self._client,
            cfg,
            credentials,
            bearer_token=bearer_token,
            token_cache=self.token_cache,
            retry_policy=self.retry_policy,
            clock=self._clock,
            sleep=self._sleep,
        )
        return await adapter.fetch()

    # ------------------------------------------------------------------
    # Abandoned work
    # ------------------------------------------------------------------

    def _abandon(self, task: asyncio.Task) -> None:
        self.abandoned.add(task)
        task.add_done_callback(self._reap)

    def _reap(self, task: asyncio.Task) -> None:
        self.abandoned.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Abandoned fetch finished with {!r}", task.exception())

    async def cancel_abandoned(self) -> int:
        """Cancel background fetches left over from timed-out providers."""
        pending = [task for task in self.abandoned if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Cancelled {} abandoned fetch(es).", len(pending))
        return len(pending)
