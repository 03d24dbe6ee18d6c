"""
GridPulse — FastAPI entrypoint
One invocation fetches price, load and generation mix from eight grid
operators concurrently and returns one normalized JSON snapshot.

Run:  uvicorn api:app --reload --port 8000
Docs: http://localhost:8000/docs

Routes
------
OPTIONS /              CORS preflight, empty body
GET|POST /             aggregate snapshot for every provider
GET|POST /?test=<id>   connectivity probes for one provider
GET /health            liveness, token cache state, configured providers
"""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from feeds.assembler import CORS_HEADERS, ResponseAssembler
from feeds.config import load_settings, resolve_credentials
from feeds.diagnostics import DIAGNOSTIC_PROBES, run_diagnostics
from feeds.errors import OrchestrationError
from feeds.models import utc_now
from feeds.orchestrator import FetchOrchestrator
from feeds.token_cache import TokenCache

settings = load_settings()

logger.remove()
logger.add(sys.stderr, level=settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the shared httpx client and token cache for the lifetime of the process."""
    client = httpx.AsyncClient(timeout=settings.http_timeout, follow_redirects=True)
    token_cache = TokenCache(
        client,
        token_url=settings.token_url,
        client_id=settings.token_client_id,
        scope=settings.token_scope,
        lifetime=settings.token_lifetime,
    )
    app.state.settings = settings
    app.state.http_client = client
    app.state.token_cache = token_cache
    app.state.orchestrator = FetchOrchestrator(client, settings, token_cache)
    app.state.assembler = ResponseAssembler()
    logger.info("httpx AsyncClient initialised; {} providers configured.", len(settings.providers))
    yield
    await app.state.orchestrator.cancel_abandoned()
    await client.aclose()
    logger.info("httpx AsyncClient closed.")


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="GridPulse API",
    description=(
        "Concurrent fetch-and-normalize aggregator for ERCOT, AESO, MISO, CAISO, "
        "NYISO, PJM, SPP and IESO price, load and generation-mix telemetry."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class HealthResponse(BaseModel):
    status:               str
    timestamp:            str
    ercot_token_cached:   bool
    configured_providers: list[str]


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

_TEST_QUERY = Query(
    default=None,
    description=(
        "Provider id (ercot, aeso, miso, caiso, nyiso, pjm, spp, ieso). When set, "
        "probe that provider's endpoints instead of running the aggregation."
    ),
)


@app.options("/", tags=["Snapshot"])
async def preflight(request: Request):
    return request.app.state.assembler.preflight()


@app.api_route("/", methods=["GET", "POST"], tags=["Snapshot"])
async def snapshot(request: Request, test: Optional[str] = _TEST_QUERY):
    """
    Return the normalized snapshot for every provider.

    Every field under a provider is optional: a provider that is not
    configured, failed authentication, timed out or returned malformed data
    is present with whatever subset of pricing / loadData / generationMix it
    produced.  Only a failure before any provider ran returns 503.
    """
    state = request.app.state

    if test is not None:
        provider_id = test.strip().lower()
        if provider_id not in DIAGNOSTIC_PROBES:
            raise HTTPException(
                status_code=404,
                detail=f"Unknown diagnostic '{test}'. Valid: {sorted(DIAGNOSTIC_PROBES)}",
            )
        logger.info("{} / [TEST {}]", request.method, provider_id)
        report = await run_diagnostics(state.http_client, provider_id)
        return JSONResponse(report.model_dump(mode="json"), headers=CORS_HEADERS)

    logger.info("{} / | aggregating {} providers", request.method, len(state.settings.providers))
    try:
        aggregate = await state.orchestrator.run_all()
    except OrchestrationError as exc:
        logger.error("Orchestration setup failed: {}", exc)
        return state.assembler.error(str(exc))
    return state.assembler.assemble(aggregate)


@app.get("/health", response_model=HealthResponse, tags=["Meta"])
async def health(request: Request):
    """Returns service health, whether the ERCOT token is cached, and the credentialed providers."""
    state = request.app.state
    return HealthResponse(
        status="ok",
        timestamp=utc_now().isoformat(),
        ercot_token_cached=state.token_cache.has_valid_token,
        configured_providers=[
            pid for pid, cfg in state.settings.providers.items()
            if resolve_credentials(cfg) is not None
        ],
    )
