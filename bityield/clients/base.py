from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from bityield.http import HttpClient
from bityield.models import ComponentHealth, Protocol, YieldOpportunity

logger = logging.getLogger(__name__)


class ProtocolClient(ABC):
    """One vendor integration that yields normalized sBTC opportunities."""

    def __init__(self, http: HttpClient):
        self.http = http

    @property
    @abstractmethod
    def protocol(self) -> Protocol:
        pass

    @property
    @abstractmethod
    def health_url(self) -> str:
        pass

    @abstractmethod
    async def fetch_yield_opportunities(self) -> List[YieldOpportunity]:
        """Return every sBTC opportunity.

        Individual pool failures are logged and skipped; a failure of the
        vendor listing itself propagates to the caller.
        """

    async def health_check(self) -> ComponentHealth:
        start = time.perf_counter()
        try:
            await self.http.get(self.health_url)
        except Exception as e:
            logger.warning(f"{self.protocol.value} health check failed: {e}")
            return ComponentHealth(status="down", error=str(e))
        latency = (time.perf_counter() - start) * 1000.0
        return ComponentHealth(status="up", latency_ms=round(latency, 2))


def as_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    if isinstance(value, dict):
        value = value.get("value")
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def data_list(payload: Any, *keys: str) -> List[Dict[str, Any]]:
    """Pull the record list out of a vendor envelope."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for k in keys:
            v = payload.get(k)
            if isinstance(v, list):
                return v
    raise ValueError(f"unexpected payload shape: {type(payload).__name__}")
