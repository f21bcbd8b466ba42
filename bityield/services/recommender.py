from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from bityield.config import Settings
from bityield.errors import NoSuitableOpportunityError
from bityield.models import (
    AlternativeRecommendation,
    AuditStatus,
    ProjectedEarnings,
    Recommendation,
    RecommendationSource,
    RiskLevel,
    RiskTolerance,
    UserPreference,
    YieldOpportunity,
)
from bityield.services.aggregator import (
    RISK_MULTIPLIERS,
    FilterCriteria,
    allowed_risk_levels,
    filter_opportunities,
    tvl_factor,
)

logger = logging.getLogger(__name__)


TIER_MULTIPLIERS = {
    RiskTolerance.CONSERVATIVE: {RiskLevel.LOW: 1.0, RiskLevel.MEDIUM: 0.5, RiskLevel.HIGH: 0.1},
    RiskTolerance.MODERATE: RISK_MULTIPLIERS,
    RiskTolerance.AGGRESSIVE: {RiskLevel.LOW: 0.8, RiskLevel.MEDIUM: 1.0, RiskLevel.HIGH: 1.2},
}

TARGET_RISK = {
    RiskTolerance.CONSERVATIVE: RiskLevel.LOW,
    RiskTolerance.MODERATE: RiskLevel.MEDIUM,
    RiskTolerance.AGGRESSIVE: RiskLevel.HIGH,
}

LOCK_PENALTY = 0.95
MIN_FEE_PENALTY = 0.7
PREFERRED_PROTOCOL_BONUS = 1.2
MAX_ALTERNATIVES = 3


@dataclass
class ScoredOpportunity:
    opportunity: YieldOpportunity
    score: float


@dataclass
class Ranking:
    candidates: List[ScoredOpportunity]
    within_tolerance: bool = True
    warnings: List[str] = field(default_factory=list)

    @property
    def best(self) -> YieldOpportunity:
        return self.candidates[0].opportunity

    @property
    def runners_up(self) -> List[YieldOpportunity]:
        return [c.opportunity for c in self.candidates[1 : 1 + MAX_ALTERNATIVES]]


def preference_score(opp: YieldOpportunity, pref: UserPreference) -> float:
    """APY x log10(TVL) x tier multiplier, adjusted for lock, fees and protocol preference."""
    tier = TIER_MULTIPLIERS[RiskTolerance(pref.risk_tolerance)]
    lock_penalty = LOCK_PENALTY if (opp.lock_period or 0) > 0 else 1.0
    fee_penalty = max(MIN_FEE_PENALTY, 1.0 - opp.total_fees / 100.0)
    bonus = PREFERRED_PROTOCOL_BONUS if pref.preferred_protocols and opp.protocol in pref.preferred_protocols else 1.0
    return opp.apy * tvl_factor(opp.tvl) * tier[opp.risk_level] * lock_penalty * fee_penalty * bonus


def rank_candidates(opportunities: Sequence[YieldOpportunity], pref: UserPreference) -> Ranking:
    criteria = FilterCriteria(
        min_apy=pref.min_apy,
        protocols=pref.preferred_protocols or None,
        no_impermanent_loss=pref.avoid_impermanent_loss,
        max_lock_period=pref.max_lock_period,
    )
    candidates = filter_opportunities(opportunities, criteria)
    if not candidates:
        raise NoSuitableOpportunityError("No suitable opportunities found matching your criteria")

    allowed = allowed_risk_levels(pref.risk_tolerance)
    within = [o for o in candidates if o.risk_level in allowed]
    warnings: List[str] = []
    if within:
        candidates = within
    else:
        tolerance = RiskTolerance(pref.risk_tolerance).value
        logger.warning(f"No opportunity fits {tolerance} risk tolerance, ranking all {len(candidates)} candidates")
        warnings.append(f"No opportunity matches your {tolerance} risk tolerance - this recommendation carries more risk than requested")

    scored = [ScoredOpportunity(o, preference_score(o, pref)) for o in candidates]
    scored.sort(key=lambda s: s.score, reverse=True)
    return Ranking(candidates=scored, within_tolerance=bool(within), warnings=warnings)


def projected_earnings(amount_sats: float, apy: float) -> ProjectedEarnings:
    yearly = amount_sats * apy / 100.0
    return ProjectedEarnings(daily=yearly / 365.0, monthly=yearly / 12.0, yearly=yearly)


def data_freshness(opportunities: Sequence[YieldOpportunity], now_ms: Optional[int] = None) -> float:
    """Age in seconds of the oldest opportunity."""
    if not opportunities:
        return 0.0
    now = now_ms if now_ms is not None else int(time.time() * 1000)
    return max(0.0, max((now - o.updated_at) / 1000.0 for o in opportunities))


def confidence_score(opp: YieldOpportunity, pref: UserPreference, freshness: float, stale_after: float) -> float:
    confidence = 0.5
    if opp.tvl > 10_000_000:
        confidence += 0.2
    elif opp.tvl > 5_000_000:
        confidence += 0.1
    if opp.audit_status == AuditStatus.AUDITED:
        confidence += 0.1
    if opp.risk_level in allowed_risk_levels(pref.risk_tolerance):
        confidence += 0.1
    if opp.risk_level == TARGET_RISK[RiskTolerance(pref.risk_tolerance)]:
        confidence += 0.05
    if opp.apy > 100:
        confidence -= 0.2
    if freshness > stale_after:
        confidence -= 0.1
    return min(0.9, max(0.3, round(confidence, 4)))


def compare(alt: YieldOpportunity, chosen: YieldOpportunity) -> tuple[str, str]:
    """Pros and cons of ``alt`` measured against the recommended opportunity."""
    pros: List[str] = []
    cons: List[str] = []

    if alt.apy > chosen.apy:
        pros.append(f"Higher APY ({alt.apy:.1f}% vs {chosen.apy:.1f}%)")
    elif alt.apy < chosen.apy:
        cons.append(f"Lower APY ({alt.apy:.1f}% vs {chosen.apy:.1f}%)")

    if alt.risk_level.ordinal < chosen.risk_level.ordinal:
        pros.append(f"Lower risk ({alt.risk_level.value})")
    elif alt.risk_level.ordinal > chosen.risk_level.ordinal:
        cons.append(f"Higher risk ({alt.risk_level.value})")

    if alt.tvl > chosen.tvl:
        pros.append("Deeper liquidity")
    elif alt.tvl < chosen.tvl:
        cons.append("Less liquidity")

    alt_lock, chosen_lock = alt.lock_period or 0, chosen.lock_period or 0
    if alt_lock == 0 and chosen_lock > 0:
        pros.append("No lock period")
    elif alt_lock > chosen_lock:
        cons.append(f"{alt_lock}-day lock")

    if not alt.impermanent_loss_risk and chosen.impermanent_loss_risk:
        pros.append("No IL risk")
    elif alt.impermanent_loss_risk and not chosen.impermanent_loss_risk:
        cons.append("IL risk")

    if alt.performance_fee > 5:
        cons.append(f"{alt.performance_fee:g}% performance fee")

    return ", ".join(pros) or "Comparable to the recommended option", ", ".join(cons) or "Consider fees and risks"


def alternatives_for(ranking: Ranking) -> List[AlternativeRecommendation]:
    chosen = ranking.best
    out = []
    for alt in ranking.runners_up:
        pros, cons = compare(alt, chosen)
        out.append(
            AlternativeRecommendation(
                protocol=alt.protocol,
                pool_id=alt.pool_id,
                pool_name=alt.pool_name,
                apy=alt.apy,
                tvl=alt.tvl,
                risk_level=alt.risk_level,
                pros=pros,
                cons=cons,
            )
        )
    return out


def build_warnings(opp: YieldOpportunity, ranking: Ranking, freshness: float, settings: Settings) -> List[str]:
    warnings = list(ranking.warnings)
    if opp.apy > 50:
        warnings.append("Extremely high APY may be unsustainable - proceed with caution")
    if opp.audit_status != AuditStatus.AUDITED:
        warnings.append("Protocol is not audited - higher smart contract risk")
    if opp.tvl < 1_000_000:
        warnings.append("Low TVL - limited liquidity and higher risk")
    elif opp.tvl < settings.MIN_TVL_FOR_RECOMMENDATION:
        warnings.append(f"TVL is below the recommended minimum of ${settings.MIN_TVL_FOR_RECOMMENDATION / 1e6:.1f}M")
    if freshness > settings.CACHE_STALE_SECONDS:
        warnings.append(f"Yield data is {freshness / 60:.0f} minutes old - rates may have changed")
    return warnings


def merge_warnings(*groups: Sequence[str]) -> List[str]:
    seen = set()
    out = []
    for group in groups:
        for w in group:
            if w not in seen:
                seen.add(w)
                out.append(w)
    return out


def assemble(
    ranking: Ranking,
    pref: UserPreference,
    *,
    reasoning: str,
    risk_assessment: str,
    warnings: List[str],
    freshness: float,
    settings: Settings,
    source: RecommendationSource,
) -> Recommendation:
    best = ranking.best
    return Recommendation(
        protocol=best.protocol,
        pool_id=best.pool_id,
        pool_name=best.pool_name,
        expected_apy=best.apy,
        risk_level=best.risk_level,
        impermanent_loss_risk=best.impermanent_loss_risk,
        reasoning=reasoning,
        risk_assessment=risk_assessment,
        alternatives=alternatives_for(ranking),
        projected_earnings=projected_earnings(pref.amount, best.apy),
        confidence_score=confidence_score(best, pref, freshness, settings.CACHE_STALE_SECONDS),
        warnings=warnings,
        data_freshness=freshness,
        source=source,
    )


def describe_reasoning(opp: YieldOpportunity, pref: UserPreference) -> str:
    tolerance = RiskTolerance(pref.risk_tolerance)
    if tolerance == RiskTolerance.CONSERVATIVE and opp.risk_level == RiskLevel.LOW:
        parts = [f"This {opp.protocol.value} {opp.protocol_type.value.replace('_', ' ')} aligns with your conservative risk profile"]
    elif tolerance == RiskTolerance.AGGRESSIVE and opp.apy > 15:
        parts = [f"High {opp.apy:.1f}% APY matches your aggressive strategy"]
    else:
        parts = [f"Balanced {opp.apy:.1f}% APY with {opp.risk_level.value} risk suits a {tolerance.value} investor"]

    if opp.tvl > 10_000_000:
        parts.append(f"with strong liquidity (${opp.tvl / 1e6:.1f}M TVL)")

    if not opp.lock_period:
        if not opp.impermanent_loss_risk:
            parts.append("offering flexible withdrawals without impermanent loss")
        else:
            parts.append("with no lock-up period for flexibility")

    return " ".join(parts) + "."


def describe_risks(opp: YieldOpportunity) -> str:
    risks: List[str] = []
    if opp.impermanent_loss_risk:
        risks.append("Liquidity provision carries impermanent loss risk if token prices diverge")
    if opp.lock_period:
        risks.append(f"Funds locked for {opp.lock_period} days - cannot withdraw early")
    if opp.risk_level == RiskLevel.HIGH:
        risks.append("Higher risk due to thin liquidity, volatile pairing or an elevated APY")
    if opp.tvl < 5_000_000:
        risks.append("Relatively low TVL may impact liquidity during high volatility")
    if opp.performance_fee > 10:
        risks.append(f"{opp.performance_fee:g}% performance fee reduces net returns")
    risks.extend(opp.risk_factors[:2])
    if not risks:
        return "Standard DeFi risks apply."
    return ". ".join(r.rstrip(".") for r in risks) + "."


class RuleBasedRecommender:
    """Deterministic recommender; also the fallback when the AI path fails."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def recommend(self, opportunities: Sequence[YieldOpportunity], pref: UserPreference) -> Recommendation:
        logger.info(
            f"Generating rule-based recommendation ({len(opportunities)} opportunities, "
            f"tolerance={RiskTolerance(pref.risk_tolerance).value})"
        )
        ranking = rank_candidates(opportunities, pref)
        best = ranking.best
        freshness = data_freshness(opportunities)

        rec = assemble(
            ranking,
            pref,
            reasoning=describe_reasoning(best, pref),
            risk_assessment=describe_risks(best),
            warnings=build_warnings(best, ranking, freshness, self.settings),
            freshness=freshness,
            settings=self.settings,
            source=RecommendationSource.RULE_BASED,
        )
        logger.info(f"Rule-based recommendation: {rec.protocol.value}/{rec.pool_id} score={ranking.candidates[0].score:.2f}")
        return rec
