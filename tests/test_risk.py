import pytest

from bityield.models import RiskLevel
from bityield.services import risk


def test_healthy_stable_pool_is_low_risk():
    assert risk.assess_risk_level(5_000_000, 250_000, 12.0, "USDA") == RiskLevel.LOW


def test_points_accumulate_to_high():
    # tiny TVL (+2), no volume (+2), APY above 50 (+2)
    assert risk.risk_points(50_000, 500, 80.0, 0) == 6
    assert risk.assess_risk_level(50_000, 500, 80.0, None) == RiskLevel.HIGH


def test_volatile_pair_adds_two_points():
    assert risk.risk_points(400_000, 5_000, 10.0, risk.pair_volatility("STX")) == 4
    assert risk.assess_risk_level(400_000, 5_000, 10.0, "STX") == RiskLevel.MEDIUM


def test_missing_volume_is_not_penalized():
    assert risk.risk_points(5_000_000, None, 10.0, 0) == 0


@pytest.mark.parametrize(
    "points,level",
    [(0, RiskLevel.LOW), (2, RiskLevel.LOW), (3, RiskLevel.MEDIUM), (4, RiskLevel.MEDIUM), (5, RiskLevel.HIGH), (8, RiskLevel.HIGH)],
)
def test_level_thresholds(points, level):
    assert risk.risk_level_from_points(points) == level


def test_pair_volatility_classes():
    assert risk.pair_volatility(None) == 0
    assert risk.pair_volatility("usdc") == 0
    assert risk.pair_volatility("ALEX") == 2
    assert risk.pair_volatility("SOMETOKEN") == 1


def test_risk_factors_are_bracketed():
    factors = risk.risk_factors(200_000, 20_000, 60.0, "STX", impermanent_loss=True, extra=["extra note"])
    assert factors[0] == risk.IL_NOTE
    assert factors[-1] == risk.SMART_CONTRACT_NOTE
    assert "extra note" in factors
    assert any("Volatile trading pair (sBTC-STX)" in f for f in factors)
    assert any("High APY" in f for f in factors)


def test_single_asset_risk_factors():
    factors = risk.risk_factors(20_000_000, None, 5.0, None, impermanent_loss=False)
    assert factors == [risk.NO_IL_NOTE, risk.SMART_CONTRACT_NOTE]


def test_trading_fee_apy():
    assert risk.trading_fee_apy(1_000, 3_650_000) == pytest.approx(10.0)
    assert risk.trading_fee_apy(1_000, 0) == 0.0


def test_is_sbtc_token():
    assert risk.is_sbtc_token("SM3VDXK3WZZSA84XXFKAFAF15NNZX32CTSG82JFQ4.sbtc-token")
    assert risk.is_sbtc_token(None, "wsBTC")
    assert not risk.is_sbtc_token("STX", None)
