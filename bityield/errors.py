from __future__ import annotations


class BitYieldError(Exception):
    """Base class for errors raised by the service."""


class ProtocolAPIError(BitYieldError):
    """A protocol vendor API returned something we cannot use."""

    def __init__(self, protocol: str, message: str):
        super().__init__(f"{protocol}: {message}")
        self.protocol = protocol


class NoYieldDataError(BitYieldError):
    """No opportunities are available from any protocol."""


class NoSuitableOpportunityError(BitYieldError):
    """Nothing satisfies the user's hard constraints."""


class AIRecommendationError(BitYieldError):
    """The AI path failed; callers fall back to the rule-based recommender."""


class DataValidationError(BitYieldError):
    """An aggregation cycle produced data that must not be cached."""
