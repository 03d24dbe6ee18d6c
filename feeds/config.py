"""
GridPulse — Runtime configuration.

Every provider-scoped constant lives in ``PROVIDERS``: deadlines, the
inter-request delay used to stay under upstream rate limits, plausibility
bounds, the baseline price that drives ``market_conditions`` and the
environment variables that carry credentials.

The plausibility bounds were tuned empirically against observed upstream
values; treat them as adjustable, not authoritative.

Environment
-----------
  ERCOT_USERNAME / ERCOT_PASSWORD   ERCOT public API ROPC login
  ERCOT_API_KEY                     ERCOT subscription key (fallback ERCOT_API_KEY_SECONDARY)
  AESO_API_KEY                      AESO API gateway key   (fallback AESO_SUB_KEY)
  PJM_API_KEY                       PJM Data Miner 2 subscription key
  <ID>_TIMEOUT_SECONDS              per-provider deadline override, e.g. ERCOT_TIMEOUT_SECONDS
  AESO_RETRY_ATTEMPTS               attempts for the AESO incomplete-payload retry
  ERCOT_TOKEN_LIFETIME_MINUTES      cached token lifetime (default 55)
  LOG_LEVEL                         loguru level (default INFO)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Mapping, Optional

from dotenv import load_dotenv
from loguru import logger

load_dotenv()

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PRICE_BOUNDS: tuple[float, float] = (-500.0, 3000.0)   # currency/MWh

ERCOT_TOKEN_URL = (
    "https://ercotb2c.b2clogin.com/ercotb2c.onmicrosoft.com/"
    "B2C_1_PUBAPI-ROPC-FLOW/oauth2/v2.0/token"
)
ERCOT_CLIENT_ID = "fec253ea-0d06-4272-a5e6-b478baeecd70"
ERCOT_SCOPE     = f"openid {ERCOT_CLIENT_ID} offline_access"

TOKEN_LIFETIME_MINUTES = 55        # upstream declares 60; refresh early
RETRY_MAX_ATTEMPTS     = 3
RETRY_BASE_DELAY       = 2.0       # seconds; delay = base ** attempt
HTTP_TIMEOUT           = 30.0


# ---------------------------------------------------------------------------
# Provider table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderSettings:
    provider_id:         str
    display_name:        str
    timeout_seconds:     float
    inter_request_delay: float                      # seconds between sub-requests
    baseline_price:      float                      # currency/MWh, drives market_conditions
    load_bounds:         tuple[float, float]        # MW
    generation_bounds:   tuple[float, float]        # MW
    reserve_margin_pct:  float                      # used when capacity is not published
    price_bounds:        tuple[float, float] = PRICE_BOUNDS
    hub_node:            Optional[str] = None       # canonical system-wide price node
    requires_oauth:      bool = False
    # credential name -> candidate environment variables, first non-empty wins
    credential_vars:     Mapping[str, tuple[str, ...]] = field(default_factory=dict)


PROVIDERS: dict[str, ProviderSettings] = {
    "ercot": ProviderSettings(
        provider_id="ercot", display_name="ERCOT",
        timeout_seconds=30.0, inter_request_delay=2.0,
        baseline_price=45.0,
        load_bounds=(10_000.0, 100_000.0),
        generation_bounds=(10_000.0, 100_000.0),
        reserve_margin_pct=12.3,
        hub_node="HB_HUBAVG",
        requires_oauth=True,
        credential_vars={
            "username": ("ERCOT_USERNAME",),
            "password": ("ERCOT_PASSWORD",),
            "api_key":  ("ERCOT_API_KEY", "ERCOT_API_KEY_SECONDARY"),
        },
    ),
    "aeso": ProviderSettings(
        provider_id="aeso", display_name="AESO",
        timeout_seconds=15.0, inter_request_delay=1.0,
        baseline_price=60.0,
        load_bounds=(5_000.0, 15_000.0),
        generation_bounds=(3_000.0, 20_000.0),
        reserve_margin_pct=18.7,
        credential_vars={"api_key": ("AESO_API_KEY", "AESO_SUB_KEY")},
    ),
    "miso": ProviderSettings(
        provider_id="miso", display_name="MISO",
        timeout_seconds=20.0, inter_request_delay=1.0,
        baseline_price=35.0,
        load_bounds=(40_000.0, 150_000.0),
        generation_bounds=(30_000.0, 150_000.0),
        reserve_margin_pct=17.9,
    ),
    "caiso": ProviderSettings(
        provider_id="caiso", display_name="CAISO",
        timeout_seconds=25.0, inter_request_delay=1.0,
        baseline_price=50.0,
        load_bounds=(15_000.0, 60_000.0),
        generation_bounds=(10_000.0, 60_000.0),
        reserve_margin_pct=15.0,
    ),
    "nyiso": ProviderSettings(
        provider_id="nyiso", display_name="NYISO",
        timeout_seconds=15.0, inter_request_delay=0.5,
        baseline_price=45.0,
        load_bounds=(10_000.0, 35_000.0),
        generation_bounds=(8_000.0, 40_000.0),
        reserve_margin_pct=16.0,
    ),
    "pjm": ProviderSettings(
        provider_id="pjm", display_name="PJM",
        timeout_seconds=20.0, inter_request_delay=2.0,
        baseline_price=40.0,
        load_bounds=(50_000.0, 200_000.0),
        generation_bounds=(50_000.0, 180_000.0),
        reserve_margin_pct=14.7,
        hub_node="PJM-RTO",
        credential_vars={"api_key": ("PJM_API_KEY",)},
    ),
    "spp": ProviderSettings(
        provider_id="spp", display_name="SPP",
        timeout_seconds=20.0, inter_request_delay=1.0,
        baseline_price=30.0,
        load_bounds=(20_000.0, 70_000.0),
        generation_bounds=(15_000.0, 80_000.0),
        reserve_margin_pct=16.0,
    ),
    "ieso": ProviderSettings(
        provider_id="ieso", display_name="IESO",
        timeout_seconds=15.0, inter_request_delay=0.5,
        baseline_price=35.0,
        load_bounds=(10_000.0, 30_000.0),
        generation_bounds=(8_000.0, 35_000.0),
        reserve_margin_pct=20.0,
    ),
}


@dataclass(frozen=True)
class AppSettings:
    providers:            dict[str, ProviderSettings]
    token_url:            str = ERCOT_TOKEN_URL
    token_client_id:      str = ERCOT_CLIENT_ID
    token_scope:          str = ERCOT_SCOPE
    token_lifetime:       timedelta = timedelta(minutes=TOKEN_LIFETIME_MINUTES)
    retry_max_attempts:   int = RETRY_MAX_ATTEMPTS
    retry_base_delay:     float = RETRY_BASE_DELAY
    http_timeout:         float = HTTP_TIMEOUT
    log_level:            str = "INFO"


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric {}={!r}; using {}.", name, raw, default)
        return default


def load_settings(environ: Optional[Mapping[str, str]] = None) -> AppSettings:
    """Build AppSettings from the provider table plus environment overrides."""
    env = os.environ if environ is None else environ

    providers = {
        pid: replace(
            cfg,
            timeout_seconds=_env_float(env, f"{pid.upper()}_TIMEOUT_SECONDS", cfg.timeout_seconds),
        )
        for pid, cfg in PROVIDERS.items()
    }

    return AppSettings(
        providers=providers,
        token_lifetime=timedelta(
            minutes=_env_float(env, "ERCOT_TOKEN_LIFETIME_MINUTES", TOKEN_LIFETIME_MINUTES)
        ),
        retry_max_attempts=int(_env_float(env, "AESO_RETRY_ATTEMPTS", RETRY_MAX_ATTEMPTS)),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )


def resolve_credentials(
    provider: ProviderSettings,
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[dict[str, str]]:
    """
    Return the provider's credentials, or None when any of them is missing.

    Providers without credential requirements always resolve to an empty
    dict.  Whitespace-only values count as missing.
    """
    env = os.environ if environ is None else environ
    resolved: dict[str, str] = {}
    for name, candidates in provider.credential_vars.items():
        value = next(
            (env[var].strip() for var in candidates if env.get(var, "").strip()),
            None,
        )
        if value is None:
            return None
        resolved[name] = value
    return resolved
