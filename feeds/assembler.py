"""
GridPulse — Response assembly.

Turns an AggregateResult into the HTTP response body:

    {"success": true, "timestamp": "...",
     "ercot": {"pricing": {...}, "loadData": {...}, "generationMix": {...}},
     "aeso":  {"pricing": {...}, "rolling_30day_avg": 61.02},
     ...}

Every configured provider id is present; every field under it is optional.
If the full body cannot be encoded (NaN, a non-JSON extra) the client still
gets HTTP 200 with ``success: true``: a reduced body carrying only each
provider's pricing and ``degraded: true``.  The 503 path is reserved for
failures before any provider ran.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import Response
from loguru import logger

from feeds.models import AggregateResult, utc_now

CORS_HEADERS = {
    "Access-Control-Allow-Origin":  "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}

JSON_MEDIA_TYPE = "application/json"


def encode(payload: Any) -> str:
    """Strict JSON: NaN/Infinity and unknown types raise instead of leaking through."""
    return json.dumps(payload, allow_nan=False)


class ResponseAssembler:

    def assemble(self, aggregate: AggregateResult) -> Response:
        try:
            body = encode(self.full_payload(aggregate))
        except (TypeError, ValueError) as exc:
            logger.error("Full payload not serializable ({}); sending pricing-only payload.", exc)
            body = encode(self.reduced_payload(aggregate))
        return self._respond(body, 200)

    def full_payload(self, aggregate: AggregateResult) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success":   True,
            "timestamp": aggregate.generated_at.isoformat(),
        }
        for provider_id, result in aggregate.results.items():
            payload[provider_id] = result.to_wire()
        return payload

    def reduced_payload(self, aggregate: AggregateResult) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success":   True,
            "degraded":  True,
            "timestamp": aggregate.generated_at.isoformat(),
        }
        for provider_id, result in aggregate.results.items():
            if result.pricing is None:
                payload[provider_id] = {}
                continue
            try:
                pricing = result.pricing.model_dump(mode="json")
                encode(pricing)
            except (TypeError, ValueError) as exc:
                logger.warning("{} pricing not serializable either ({}); omitted.", provider_id, exc)
                payload[provider_id] = {}
                continue
            payload[provider_id] = {"pricing": pricing}
        return payload

    def error(self, message: str, status_code: int = 503) -> Response:
        body = encode({
            "success":   False,
            "error":     message,
            "timestamp": utc_now().isoformat(),
        })
        return self._respond(body, status_code)

    def preflight(self) -> Response:
        return Response(status_code=200, headers=CORS_HEADERS)

    @staticmethod
    def _respond(body: str, status_code: int) -> Response:
        return Response(
            content=body,
            status_code=status_code,
            media_type=JSON_MEDIA_TYPE,
            headers=CORS_HEADERS,
        )
