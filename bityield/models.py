from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

APY_BREAKDOWN_TOLERANCE = 0.1

DEFAULT_DISCLAIMERS = [
    "DeFi yields are volatile and not guaranteed",
    "Past performance does not indicate future results",
    "Only invest what you can afford to lose",
    "This is an automated recommendation - please do your own research",
]


def now_ms() -> int:
    return int(time.time() * 1000)


class Protocol(str, Enum):
    VELAR = "velar"
    ALEX = "alex"


class ProtocolType(str, Enum):
    LENDING = "lending"
    LIQUIDITY_POOL = "liquidity_pool"
    STAKING = "staking"
    YIELD_FARMING = "yield_farming"
    AUTO_COMPOUNDING = "auto_compounding"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def ordinal(self) -> int:
        return RISK_ORDER[self]


RISK_ORDER = {RiskLevel.LOW: 1, RiskLevel.MEDIUM: 2, RiskLevel.HIGH: 3}


class RiskTolerance(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class AuditStatus(str, Enum):
    AUDITED = "audited"
    UNAUDITED = "unaudited"
    IN_PROGRESS = "in_progress"


class TimeHorizon(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class RecommendationSource(str, Enum):
    AI = "ai"
    RULE_BASED = "rule_based"


class ApyBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    base: float = Field(..., ge=0.0, description="Base yield (trading fees or staking) in %")
    rewards: Optional[float] = Field(default=None, ge=0.0, description="Token reward yield in %")
    fees: Optional[float] = Field(default=None, ge=0.0, description="Trading fee share in %")


class YieldOpportunity(BaseModel):
    model_config = ConfigDict(frozen=True)

    protocol: Protocol
    protocol_type: ProtocolType
    pool_id: str
    pool_name: str

    apy: float = Field(..., ge=0.0, le=10000.0, description="Annual percentage yield in %")
    apy_breakdown: Optional[ApyBreakdown] = None

    tvl: float = Field(..., ge=0.0, description="Total value locked in USD")
    tvl_in_sbtc: float = Field(..., ge=0.0)
    volume_24h: Optional[float] = Field(default=None, ge=0.0)

    risk_level: RiskLevel
    risk_factors: List[str] = Field(default_factory=list)

    min_deposit: Optional[int] = Field(default=None, ge=0, description="Sats")
    max_deposit: Optional[int] = Field(default=None, ge=0, description="Sats")
    lock_period: Optional[int] = Field(default=None, ge=0, description="Days, 0 = no lock")

    deposit_fee: float = Field(default=0.0, ge=0.0, le=100.0)
    withdrawal_fee: float = Field(default=0.0, ge=0.0, le=100.0)
    performance_fee: float = Field(default=0.0, ge=0.0, le=100.0)

    impermanent_loss_risk: bool = False
    audit_status: Optional[AuditStatus] = None
    protocol_age: Optional[int] = Field(default=None, ge=0, description="Days since launch")

    contract_address: str
    description: Optional[str] = None
    updated_at: int = Field(default_factory=now_ms, description="Epoch milliseconds")
    estimated_fields: List[str] = Field(
        default_factory=list,
        description="Fields derived from a heuristic instead of vendor-reported data",
    )

    @model_validator(mode="after")
    def _check_breakdown(self) -> "YieldOpportunity":
        b = self.apy_breakdown
        if b is not None:
            total = b.base + (b.rewards or 0.0)
            if abs(total - self.apy) > APY_BREAKDOWN_TOLERANCE:
                raise ValueError(f"apy_breakdown base+rewards={total:.4f} does not match apy={self.apy:.4f}")
        return self

    @property
    def total_fees(self) -> float:
        return self.deposit_fee + self.withdrawal_fee + self.performance_fee


class ProtocolData(BaseModel):
    model_config = ConfigDict(frozen=True)

    protocol: Protocol
    opportunities: List[YieldOpportunity] = Field(default_factory=list)
    total_tvl: float = 0.0
    fetched_at: int = Field(default_factory=now_ms)
    success: bool
    error: Optional[str] = None


class HighestApy(BaseModel):
    protocol: Protocol
    pool_id: str
    apy: float


class LowestRisk(BaseModel):
    protocol: Protocol
    pool_id: str
    tvl: float


class AggregatedYieldData(BaseModel):
    model_config = ConfigDict(frozen=True)

    protocols: List[ProtocolData]
    total_opportunities: int
    total_tvl: float
    highest_apy: Optional[HighestApy] = None
    lowest_risk: Optional[LowestRisk] = None
    updated_at: int = Field(default_factory=now_ms)

    def all_opportunities(self) -> List[YieldOpportunity]:
        return [opp for p in self.protocols for opp in p.opportunities]

    def for_protocol(self, protocol: str) -> Optional[ProtocolData]:
        wanted = protocol.lower()
        for p in self.protocols:
            if p.protocol.value == wanted:
                return p
        return None


class UserPreference(BaseModel):
    amount: float = Field(..., gt=0.0, description="Deposit amount in sats")
    risk_tolerance: RiskTolerance
    time_horizon: Optional[TimeHorizon] = None
    preferred_protocols: Optional[List[Protocol]] = None
    avoid_impermanent_loss: bool = False
    min_apy: Optional[float] = Field(default=None, ge=0.0)
    max_lock_period: Optional[int] = Field(default=None, ge=0)


class AlternativeRecommendation(BaseModel):
    protocol: Protocol
    pool_id: str
    pool_name: str
    apy: float
    tvl: float
    risk_level: RiskLevel
    pros: str
    cons: str


class ProjectedEarnings(BaseModel):
    daily: float
    monthly: float
    yearly: float


class Recommendation(BaseModel):
    protocol: Protocol
    pool_id: str
    pool_name: str
    expected_apy: float = Field(..., ge=0.0)
    risk_level: RiskLevel
    impermanent_loss_risk: bool

    reasoning: str
    risk_assessment: str

    alternatives: List[AlternativeRecommendation] = Field(default_factory=list, max_length=3)
    projected_earnings: ProjectedEarnings
    confidence_score: float = Field(..., ge=0.0, le=1.0)

    warnings: List[str] = Field(default_factory=list)
    disclaimers: List[str] = Field(default_factory=lambda: list(DEFAULT_DISCLAIMERS))

    generated_at: int = Field(default_factory=now_ms)
    data_freshness: float = Field(..., ge=0.0, description="Age of the oldest input in seconds")
    source: RecommendationSource


class CacheEntry(BaseModel):
    key: str
    data: Any = None
    cached_at: int
    expires_at: int
    stale: bool = False


class ComponentHealth(BaseModel):
    status: str
    latency_ms: Optional[float] = None
    model: Optional[str] = None
    error: Optional[str] = None


class DataFreshness(BaseModel):
    oldest_data: Optional[float] = None
    stalest: Optional[str] = None


class HealthCheck(BaseModel):
    status: str = Field(..., description="healthy|degraded|unhealthy")
    timestamp: int = Field(default_factory=now_ms)
    services: Dict[str, Any]
    data_freshness: DataFreshness
