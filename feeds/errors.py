"""
GridPulse — Feed error taxonomy.

Only conditions that should change control flow get an exception type.
"No data for this metric" is expressed as ``None`` by the adapters, never
raised.
"""

from __future__ import annotations


class FeedError(Exception):
    """Base class for every error raised inside the feeds package."""


class UpstreamMalformedError(FeedError):
    """A provider payload did not have the shape its parser expects."""


class TokenExchangeError(FeedError):
    """The OAuth resource-owner-password exchange was rejected or failed."""


class OrchestrationError(FeedError):
    """The provider task set could not be built; the invocation fails as a whole."""
