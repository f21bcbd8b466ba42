from __future__ import annotations

from typing import List, Optional

from bityield.models import RiskLevel

# Point thresholds for sBTC positions
MIN_TVL_USD = 100_000
MID_TVL_USD = 500_000
MIN_VOLUME_24H = 1_000
MID_VOLUME_24H = 10_000
MAX_APY_WARNING = 50.0
MID_APY_WARNING = 25.0

LOW_LIQUIDITY_TVL = 1_000_000
LOW_VOLUME_NOTE = 100_000

STABLE_SYMBOLS = {"USDA", "USDC", "USDT", "AEUSDC", "SUSDT", "USDH", "SUSDH"}
VOLATILE_SYMBOLS = {"STX", "WSTX", "ALEX", "VELAR", "WELSH", "LEO", "ROO", "DIKO", "ABTC", "XBTC"}

IL_NOTE = "Impermanent loss risk from price divergence between assets"
NO_IL_NOTE = "No impermanent loss exposure - single-asset position"
SMART_CONTRACT_NOTE = "Smart contract risk - always DYOR and only invest what you can afford to lose"


def is_sbtc_token(*values: Optional[str]) -> bool:
    """True when any symbol or contract id names sBTC (``wsbtc`` included)."""
    return any(v and "sbtc" in v.lower() for v in values)


def pair_volatility(paired_symbol: Optional[str]) -> int:
    """0 for stable or single-asset, 1 for unknown tokens, 2 for known volatile tokens."""
    if not paired_symbol:
        return 0
    sym = paired_symbol.upper()
    if sym in STABLE_SYMBOLS:
        return 0
    if sym in VOLATILE_SYMBOLS:
        return 2
    return 1


def trading_fee_apy(fees_24h: float, tvl: float) -> float:
    if tvl <= 0:
        return 0.0
    return (fees_24h * 365.0 / tvl) * 100.0


def estimate_reward_apy(tvl: float) -> float:
    # Larger pools get a smaller share of emissions
    if tvl > 10_000_000:
        return 8.0
    if tvl > 5_000_000:
        return 12.0
    if tvl > 2_000_000:
        return 18.0
    return 25.0


def risk_points(tvl: float, volume_24h: Optional[float], apy: float, volatility: int) -> int:
    points = 0

    if tvl < MIN_TVL_USD:
        points += 2
    elif tvl < MID_TVL_USD:
        points += 1

    # Single-asset staking reports no volume; that is not a liquidity signal
    if volume_24h is not None:
        if volume_24h < MIN_VOLUME_24H:
            points += 2
        elif volume_24h < MID_VOLUME_24H:
            points += 1

    if apy > MAX_APY_WARNING:
        points += 2
    elif apy > MID_APY_WARNING:
        points += 1

    points += max(0, min(2, volatility))
    return points


def risk_level_from_points(points: int) -> RiskLevel:
    if points >= 5:
        return RiskLevel.HIGH
    if points >= 3:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def assess_risk_level(tvl: float, volume_24h: Optional[float], apy: float, paired_symbol: Optional[str]) -> RiskLevel:
    return risk_level_from_points(risk_points(tvl, volume_24h, apy, pair_volatility(paired_symbol)))


def risk_factors(
    tvl: float,
    volume_24h: Optional[float],
    apy: float,
    paired_symbol: Optional[str],
    impermanent_loss: bool,
    extra: Optional[List[str]] = None,
) -> List[str]:
    """Human-readable risk notes, always bracketed by the IL and smart-contract notes."""
    risks: List[str] = [IL_NOTE if impermanent_loss else NO_IL_NOTE]

    if tvl < LOW_LIQUIDITY_TVL:
        risks.append("Low liquidity - high slippage risk for large trades")

    if pair_volatility(paired_symbol) == 2:
        risks.append(f"Volatile trading pair (sBTC-{paired_symbol.upper()}) - higher impermanent loss risk")

    if volume_24h is not None and volume_24h < LOW_VOLUME_NOTE:
        risks.append("Low trading volume - yields may be lower than projected")

    if apy > MAX_APY_WARNING:
        risks.append("High APY may not be sustainable - reward emissions could decrease")

    risks.extend(extra or [])
    risks.append(SMART_CONTRACT_NOTE)
    return risks
