"""
GridPulse — Bearer token cache for the ERCOT public API.

ERCOT issues tokens through an Azure B2C resource-owner-password-credentials
flow.  Tokens are declared valid for 60 minutes; we keep them for 55 so a
token never expires halfway through a multi-request fetch.

Lifecycle: one TokenCache is created when the API process starts (see the
lifespan in api.py) and lives until the process exits.  It is the only
mutable state shared between provider tasks.  Concurrent cache misses are
coalesced behind a lock, so N simultaneous callers trigger one exchange.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import httpx
from loguru import logger

from feeds.errors import TokenExchangeError
from feeds.models import utc_now


@dataclass(frozen=True)
class TokenCacheEntry:
    token:      str
    expires_at: datetime


class TokenCache:
    """
    Expiry-aware, process-lifetime cache of one bearer token.

    Parameters
    ----------
    client:     Shared httpx client used for the credential exchange.
    token_url:  ROPC token endpoint.
    client_id:  OAuth client id registered for the public API.
    scope:      Space-separated OAuth scopes.
    lifetime:   How long a fresh token is trusted.
    clock:      Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        token_url: str,
        client_id: str,
        scope: str,
        lifetime: timedelta = timedelta(minutes=55),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._token_url = token_url
        self._client_id = client_id
        self._scope = scope
        self._lifetime = lifetime
        self._clock = clock
        self._entry: Optional[TokenCacheEntry] = None
        self._lock = asyncio.Lock()

    @property
    def entry(self) -> Optional[TokenCacheEntry]:
        return self._entry

    @property
    def has_valid_token(self) -> bool:
        return self._entry is not None and self._clock() < self._entry.expires_at

    def invalidate(self) -> None:
        """Drop the cached token; the next get_token() re-authenticates."""
        if self._entry is not None:
            logger.info("ERCOT token invalidated.")
        self._entry = None

    async def get_token(self, username: str, password: str) -> str:
        """
        Return a valid bearer token, exchanging credentials only on a miss.

        Raises ``TokenExchangeError`` when the exchange fails; failures are
        never cached, so the next call tries again.
        """
        if self.has_valid_token:
            return self._entry.token  # type: ignore[union-attr]

        async with self._lock:
            if self.has_valid_token:
                return self._entry.token  # type: ignore[union-attr]

            token = await self._exchange(username, password)
            self._entry = TokenCacheEntry(token=token, expires_at=self._clock() + self._lifetime)
            logger.info(
                "ERCOT token refreshed; cached until {}.",
                self._entry.expires_at.isoformat(timespec="seconds"),
            )
            return token

    async def _exchange(self, username: str, password: str) -> str:
        form = {
            "username":      username,
            "password":      password,
            "grant_type":    "password",
            "scope":         self._scope,
            "client_id":     self._client_id,
            "response_type": "id_token",
        }
        try:
            resp = await self._client.post(self._token_url, data=form)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error("ERCOT token exchange rejected: HTTP {}", exc.response.status_code)
            raise TokenExchangeError(
                f"token endpoint returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("ERCOT token exchange failed: {}", exc)
            raise TokenExchangeError(f"token endpoint unreachable: {exc}") from exc
        except ValueError as exc:
            raise TokenExchangeError("token endpoint returned non-JSON body") from exc

        token = body.get("id_token") or body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise TokenExchangeError("token missing from exchange response")
        return token
