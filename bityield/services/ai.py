from __future__ import annotations

import asyncio
import json
import logging
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from bityield.clients.llm import LLMClient
from bityield.config import Settings
from bityield.errors import AIRecommendationError, NoSuitableOpportunityError, NoYieldDataError
from bityield.models import Recommendation, RecommendationSource, RiskTolerance, UserPreference, YieldOpportunity
from bityield.services.recommender import (
    Ranking,
    RuleBasedRecommender,
    assemble,
    build_warnings,
    data_freshness,
    merge_warnings,
    rank_candidates,
)

logger = logging.getLogger(__name__)

SATS_PER_BTC = 100_000_000

SYSTEM_PROMPT = """You are a Bitcoin DeFi analyst specializing in sBTC yield on the Stacks blockchain.
A deterministic ranking has already chosen the recommended opportunity. Explain that choice to the user.

Rules:
1. Discuss only the opportunities given to you. Never invent pools or protocols.
2. Weigh risk-adjusted returns, fees, lock periods and impermanent loss, not APY alone.
3. Flag APYs that look unsustainable.

Respond with a JSON object with exactly these keys:
- "reasoning": 2-3 sentences (50-500 characters) on why the chosen opportunity fits the user
- "risk_assessment": 2-3 sentences (50-500 characters) on the main downsides
- "warnings": a list of short warning strings (may be empty)"""


class AINarrative(BaseModel):
    reasoning: str = Field(..., min_length=50, max_length=500)
    risk_assessment: str = Field(..., min_length=50, max_length=500)
    warnings: List[str] = Field(default_factory=list)


def _summarize(opp: YieldOpportunity) -> dict:
    return {
        "protocol": opp.protocol.value,
        "type": opp.protocol_type.value,
        "pool_id": opp.pool_id,
        "pool_name": opp.pool_name,
        "apy": f"{opp.apy:.2f}%",
        "tvl": _format_usd(opp.tvl),
        "risk_level": opp.risk_level.value,
        "lock_period": f"{opp.lock_period} days" if opp.lock_period else "none",
        "fees": {
            "deposit": f"{opp.deposit_fee:g}%",
            "withdrawal": f"{opp.withdrawal_fee:g}%",
            "performance": f"{opp.performance_fee:g}%",
        },
        "impermanent_loss": opp.impermanent_loss_risk,
        "risk_factors": opp.risk_factors,
    }


def _format_usd(amount: float) -> str:
    if amount >= 1_000_000:
        return f"${amount / 1_000_000:.2f}M"
    if amount >= 1_000:
        return f"${amount / 1_000:.1f}K"
    return f"${amount:.0f}"


def build_prompt(ranking: Ranking, pref: UserPreference) -> str:
    profile = [
        f"- Deposit amount: {pref.amount / SATS_PER_BTC:.4f} BTC ({pref.amount:.0f} sats)",
        f"- Risk tolerance: {RiskTolerance(pref.risk_tolerance).value}",
    ]
    if pref.time_horizon:
        profile.append(f"- Time horizon: {pref.time_horizon.value}-term")
    if pref.min_apy is not None:
        profile.append(f"- Minimum APY: {pref.min_apy}%")
    if pref.avoid_impermanent_loss:
        profile.append("- Avoid impermanent loss: yes")
    if pref.max_lock_period is not None:
        profile.append(f"- Max lock period: {pref.max_lock_period} days")
    if pref.preferred_protocols:
        profile.append(f"- Preferred protocols: {', '.join(p.value for p in pref.preferred_protocols)}")

    chosen = json.dumps(_summarize(ranking.best), indent=2)
    others = json.dumps([_summarize(o) for o in ranking.runners_up], indent=2)
    notes = "\n".join(f"- {w}" for w in ranking.warnings) or "- none"

    return (
        "USER PROFILE:\n" + "\n".join(profile) + "\n\n"
        f"RECOMMENDED OPPORTUNITY:\n{chosen}\n\n"
        f"ALTERNATIVES CONSIDERED:\n{others}\n\n"
        f"RANKING NOTES:\n{notes}\n"
    )


class AIRecommender:
    """Deterministic ranking with an LLM-written narrative."""

    def __init__(self, llm: LLMClient, settings: Settings):
        self.llm = llm
        self.settings = settings
        self.timeout = settings.AI_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return self.llm.configured

    async def recommend(self, opportunities: Sequence[YieldOpportunity], pref: UserPreference) -> Recommendation:
        ranking = rank_candidates(opportunities, pref)
        best = ranking.best
        freshness = data_freshness(opportunities)

        try:
            narrative = await asyncio.wait_for(
                self.llm.chat_json(SYSTEM_PROMPT, build_prompt(ranking, pref), AINarrative),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise AIRecommendationError(f"LLM did not answer within {self.timeout:g}s") from e
        except Exception as e:
            raise AIRecommendationError(f"LLM narrative failed: {e}") from e

        rec = assemble(
            ranking,
            pref,
            reasoning=narrative.reasoning,
            risk_assessment=narrative.risk_assessment,
            warnings=merge_warnings(build_warnings(best, ranking, freshness, self.settings), narrative.warnings),
            freshness=freshness,
            settings=self.settings,
            source=RecommendationSource.AI,
        )
        logger.info(f"AI recommendation: {rec.protocol.value}/{rec.pool_id} confidence={rec.confidence_score:.2f}")
        return rec


class RecommendationService:
    """Tries the AI recommender first and falls back to the rule-based one."""

    def __init__(self, settings: Settings, rule_based: RuleBasedRecommender, ai: Optional[AIRecommender] = None):
        self.settings = settings
        self.rule_based = rule_based
        self.ai = ai

    @property
    def ai_available(self) -> bool:
        return self.ai is not None and self.settings.AI_ENABLED and self.ai.configured

    async def recommend(self, opportunities: Sequence[YieldOpportunity], pref: UserPreference) -> Recommendation:
        if not opportunities:
            raise NoYieldDataError("No yield data available")

        if self.ai_available:
            try:
                return await self.ai.recommend(opportunities, pref)
            except NoSuitableOpportunityError:
                raise
            except Exception as e:
                logger.warning(f"AI recommendation failed, using rule-based fallback: {e}")
        else:
            logger.debug("AI recommendations disabled or not configured")

        return await self.rule_based.recommend(opportunities, pref)
