from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from feeds.config import PROVIDERS
from feeds.retry import RetryPolicy
from tests.support import fixed_clock, mock_client


@pytest.fixture
def no_sleep():
    """Stand-in for asyncio.sleep that records delays without waiting."""
    return AsyncMock(return_value=None)


@pytest.fixture
def make_adapter(no_sleep):
    """Build an adapter wired to a MockTransport handler and a frozen clock."""
    def _make(adapter_cls, handler, credentials=None, **kwargs):
        kwargs.setdefault("retry_policy", RetryPolicy(sleep=no_sleep))
        return adapter_cls(
            mock_client(handler),
            PROVIDERS[adapter_cls.provider_id],
            credentials,
            clock=fixed_clock,
            sleep=no_sleep,
            **kwargs,
        )
    return _make
