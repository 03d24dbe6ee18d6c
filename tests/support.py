"""Shared builders for upstream fakes."""

from __future__ import annotations

import io
import zipfile
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

FIXED_NOW = datetime(2024, 5, 1, 19, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return FIXED_NOW


def _reply(value: Any, request: httpx.Request) -> httpx.Response:
    if callable(value):
        value = value(request)
    if isinstance(value, httpx.Response):
        return value
    if isinstance(value, bytes):
        return httpx.Response(200, content=value)
    if isinstance(value, str):
        return httpx.Response(200, text=value)
    return httpx.Response(200, json=value)


def router(
    routes: dict[str, Any],
    calls: Optional[list[httpx.Request]] = None,
) -> Callable[[httpx.Request], httpx.Response]:
    """
    MockTransport handler dispatching on URL substrings.

    Values may be JSON-able objects, str (text), bytes (raw content), an
    httpx.Response, or a callable taking the request and returning any of
    those.  Unrouted URLs get a 404.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        url = str(request.url)
        for fragment, value in routes.items():
            if fragment in url:
                return _reply(value, request)
        return httpx.Response(404, text=f"no route for {url}")

    return handler


def mock_client(handler: Callable) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def zipped(members: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, text in members.items():
            zf.writestr(name, text)
    return buf.getvalue()
