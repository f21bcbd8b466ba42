from typing import List, Optional

import pytest

from bityield.clients.base import ProtocolClient
from bityield.config import Settings
from bityield.models import (
    AuditStatus,
    ComponentHealth,
    Protocol,
    ProtocolType,
    RiskLevel,
    YieldOpportunity,
)


def _opportunity(**overrides) -> YieldOpportunity:
    fields = dict(
        protocol=Protocol.VELAR,
        protocol_type=ProtocolType.LIQUIDITY_POOL,
        pool_id="pool-1",
        pool_name="sBTC-STX LP",
        apy=10.0,
        tvl=5_000_000.0,
        tvl_in_sbtc=25.0,
        volume_24h=250_000.0,
        risk_level=RiskLevel.LOW,
        risk_factors=[],
        lock_period=0,
        impermanent_loss_risk=False,
        audit_status=AuditStatus.AUDITED,
        contract_address="SP1Y5YSTAHZ88XYK1VPDH24GY0HPX5J4JECTMY4A1.univ2-core",
    )
    fields.update(overrides)
    return YieldOpportunity(**fields)


class FakeClient(ProtocolClient):
    def __init__(
        self,
        protocol: Protocol,
        opportunities: Optional[List[YieldOpportunity]] = None,
        error: Optional[Exception] = None,
        healthy: bool = True,
    ):
        super().__init__(http=None)
        self._protocol = protocol
        self.opportunities = opportunities or []
        self.error = error
        self.healthy = healthy
        self.calls = 0

    @property
    def protocol(self) -> Protocol:
        return self._protocol

    @property
    def health_url(self) -> str:
        return f"http://{self._protocol.value}.test/health"

    async def fetch_yield_opportunities(self) -> List[YieldOpportunity]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.opportunities)

    async def health_check(self) -> ComponentHealth:
        return ComponentHealth(status="up" if self.healthy else "down", latency_ms=1.0)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        ENABLE_REDIS=False,
        ENABLE_BACKGROUND_UPDATER=False,
        OPENAI_API_KEY=None,
        LOKI_URL=None,
    )


@pytest.fixture
def make_opportunity():
    return _opportunity


@pytest.fixture
def fake_client():
    return FakeClient


@pytest.fixture
def scenario():
    """Three opportunities: a low-risk lending market, a high-risk LP and a locked medium-risk stake."""
    lending = _opportunity(
        protocol=Protocol.ALEX,
        protocol_type=ProtocolType.LENDING,
        pool_id="sbtc-lending",
        pool_name="sBTC Lending Market",
        apy=8.5,
        tvl=15_000_000.0,
        volume_24h=None,
        risk_level=RiskLevel.LOW,
    )
    velar_lp = _opportunity(
        protocol=Protocol.VELAR,
        pool_id="velar-sbtc-stx",
        pool_name="sBTC-STX LP",
        apy=22.5,
        tvl=8_000_000.0,
        risk_level=RiskLevel.HIGH,
        impermanent_loss_risk=True,
        withdrawal_fee=0.1,
    )
    alex_stake = _opportunity(
        protocol=Protocol.ALEX,
        protocol_type=ProtocolType.STAKING,
        pool_id="alex-sbtc-staking",
        pool_name="sBTC Staking",
        apy=12.0,
        tvl=6_000_000.0,
        volume_24h=None,
        risk_level=RiskLevel.MEDIUM,
        lock_period=7,
    )
    return [lending, velar_lp, alex_stake]
