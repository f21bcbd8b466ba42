from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

from bityield.clients.base import ProtocolClient
from bityield.models import (
    AggregatedYieldData,
    HighestApy,
    LowestRisk,
    Protocol,
    ProtocolData,
    RiskLevel,
    RiskTolerance,
    YieldOpportunity,
    now_ms,
)

logger = logging.getLogger(__name__)


RISK_MULTIPLIERS = {
    RiskLevel.LOW: 1.0,
    RiskLevel.MEDIUM: 0.7,
    RiskLevel.HIGH: 0.4,
}

TOLERANCE_RISK_LEVELS = {
    RiskTolerance.CONSERVATIVE: {RiskLevel.LOW},
    RiskTolerance.MODERATE: {RiskLevel.LOW, RiskLevel.MEDIUM},
    RiskTolerance.AGGRESSIVE: {RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH},
}

SORT_KEYS = ("apy", "tvl", "risk", "score")


@dataclass(frozen=True)
class FilterCriteria:
    min_apy: Optional[float] = None
    max_apy: Optional[float] = None
    min_tvl: Optional[float] = None
    max_risk_level: Optional[RiskLevel] = None
    protocols: Optional[Sequence[Protocol]] = None
    no_impermanent_loss: bool = False
    max_lock_period: Optional[int] = None


def tvl_factor(tvl: float) -> float:
    return math.log10(max(tvl, 1000.0))


def calculate_score(opp: YieldOpportunity) -> float:
    """Risk-adjusted score: APY x log10(TVL) x risk multiplier."""
    return opp.apy * tvl_factor(opp.tvl) * RISK_MULTIPLIERS[opp.risk_level]


def allowed_risk_levels(tolerance: RiskTolerance) -> set[RiskLevel]:
    return TOLERANCE_RISK_LEVELS[RiskTolerance(tolerance)]


def filter_opportunities(opportunities: Iterable[YieldOpportunity], criteria: FilterCriteria) -> List[YieldOpportunity]:
    max_rank = RiskLevel(criteria.max_risk_level).ordinal if criteria.max_risk_level else None
    protocols = {Protocol(p) for p in criteria.protocols} if criteria.protocols is not None else None

    def keep(opp: YieldOpportunity) -> bool:
        if criteria.min_apy is not None and opp.apy < criteria.min_apy:
            return False
        if criteria.max_apy is not None and opp.apy > criteria.max_apy:
            return False
        if criteria.min_tvl is not None and opp.tvl < criteria.min_tvl:
            return False
        if max_rank is not None and opp.risk_level.ordinal > max_rank:
            return False
        if protocols is not None and opp.protocol not in protocols:
            return False
        if criteria.no_impermanent_loss and opp.impermanent_loss_risk:
            return False
        if criteria.max_lock_period is not None and (opp.lock_period or 0) > criteria.max_lock_period:
            return False
        return True

    return [o for o in opportunities if keep(o)]


def sort_opportunities(opportunities: Iterable[YieldOpportunity], sort_by: str = "score", direction: str = "desc") -> List[YieldOpportunity]:
    if sort_by not in SORT_KEYS:
        raise ValueError(f"sort_by must be one of {SORT_KEYS}")
    if direction not in ("asc", "desc"):
        raise ValueError("direction must be 'asc' or 'desc'")

    keys = {
        "apy": lambda o: o.apy,
        "tvl": lambda o: o.tvl,
        "risk": lambda o: o.risk_level.ordinal,
        "score": calculate_score,
    }
    # sorted() is stable in both directions
    return sorted(opportunities, key=keys[sort_by], reverse=direction == "desc")


def get_top_opportunities(
    opportunities: Iterable[YieldOpportunity],
    limit: int = 5,
    risk_tolerance: RiskTolerance = RiskTolerance.MODERATE,
) -> List[YieldOpportunity]:
    allowed = allowed_risk_levels(risk_tolerance)
    eligible = [o for o in opportunities if o.risk_level in allowed]
    return sort_opportunities(eligible, "score", "desc")[: max(0, limit)]


def find_highest_apy(opportunities: Sequence[YieldOpportunity]) -> Optional[HighestApy]:
    if not opportunities:
        return None
    best = opportunities[0]
    for opp in opportunities[1:]:
        if opp.apy > best.apy:
            best = opp
    return HighestApy(protocol=best.protocol, pool_id=best.pool_id, apy=best.apy)


def find_lowest_risk(opportunities: Sequence[YieldOpportunity]) -> Optional[LowestRisk]:
    """Highest-TVL opportunity among low and medium risk ones."""
    safe = [o for o in opportunities if o.risk_level in (RiskLevel.LOW, RiskLevel.MEDIUM)]
    if not safe:
        return None
    best = safe[0]
    for opp in safe[1:]:
        if opp.tvl > best.tvl:
            best = opp
    return LowestRisk(protocol=best.protocol, pool_id=best.pool_id, tvl=best.tvl)


class ProtocolAggregator:
    def __init__(self, clients: Sequence[ProtocolClient]):
        self.clients = list(clients)
        self._last_refresh_at: int | None = None
        self._last: AggregatedYieldData | None = None

    @property
    def last_refresh_at(self) -> int | None:
        return self._last_refresh_at

    async def _fetch_protocol(self, client: ProtocolClient) -> ProtocolData:
        opportunities = await client.fetch_yield_opportunities()
        total_tvl = sum(o.tvl for o in opportunities)
        logger.info(f"Fetched {len(opportunities)} opportunities from {client.protocol.value} (tvl={total_tvl:.0f})")
        return ProtocolData(
            protocol=client.protocol,
            opportunities=opportunities,
            total_tvl=total_tvl,
            fetched_at=now_ms(),
            success=True,
        )

    async def fetch_all_opportunities(self) -> AggregatedYieldData:
        logger.info("Fetching yield opportunities from all protocols")
        start = time.perf_counter()

        results = await asyncio.gather(*(self._fetch_protocol(c) for c in self.clients), return_exceptions=True)

        protocols: List[ProtocolData] = []
        for client, res in zip(self.clients, results):
            if isinstance(res, BaseException):
                logger.error(f"Failed to fetch data from {client.protocol.value}: {res}")
                protocols.append(
                    ProtocolData(
                        protocol=client.protocol,
                        opportunities=[],
                        total_tvl=0.0,
                        fetched_at=now_ms(),
                        success=False,
                        error=str(res) or type(res).__name__,
                    )
                )
            else:
                protocols.append(res)

        everything = [o for p in protocols for o in p.opportunities]
        data = AggregatedYieldData(
            protocols=protocols,
            total_opportunities=len(everything),
            total_tvl=sum(p.total_tvl for p in protocols),
            highest_apy=find_highest_apy(everything),
            lowest_risk=find_lowest_risk(everything),
            updated_at=now_ms(),
        )

        elapsed = (time.perf_counter() - start) * 1000.0
        logger.info(
            f"Aggregated {data.total_opportunities} opportunities from {len(protocols)} protocols "
            f"in {elapsed:.0f}ms (tvl={data.total_tvl:.0f})"
        )
        self._last = data
        self._last_refresh_at = data.updated_at
        return data

    def current(self) -> AggregatedYieldData | None:
        return self._last

    # Bound helpers so callers holding an aggregator need no extra imports
    filter_opportunities = staticmethod(filter_opportunities)
    sort_opportunities = staticmethod(sort_opportunities)
    calculate_score = staticmethod(calculate_score)
    get_top_opportunities = staticmethod(get_top_opportunities)
