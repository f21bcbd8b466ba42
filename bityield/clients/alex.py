from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from bityield.clients.base import ProtocolClient, as_float, data_list
from bityield.clients.prices import PriceOracle
from bityield.config import Settings
from bityield.errors import ProtocolAPIError
from bityield.http import HttpClient
from bityield.models import ApyBreakdown, AuditStatus, Protocol, ProtocolType, YieldOpportunity
from bityield.services import risk

logger = logging.getLogger(__name__)

MIN_DEPOSIT_SATS = 5_000_000
STAKING_LOCK_DAYS = 7
VAULT_WITHDRAWAL_FEE = 0.5
VAULT_PERFORMANCE_FEE = 10.0
VAULT_COMPOUND_HOURS = 12
PROTOCOL_AGE_DAYS = 365
MAX_APY = 10_000.0

STAKING = "staking"
LP_FARMING = "lp_farming"
AUTO_VAULT = "auto_vault"

FARM_PROTOCOL_TYPES = {
    STAKING: ProtocolType.STAKING,
    LP_FARMING: ProtocolType.YIELD_FARMING,
    AUTO_VAULT: ProtocolType.AUTO_COMPOUNDING,
}

FARM_NAMES = {
    STAKING: "sBTC Staking",
    LP_FARMING: "sBTC-{pair} LP Farming",
    AUTO_VAULT: "sBTC Auto-Compounding Vault",
}


def farm_type(pool: Dict[str, Any]) -> str:
    kind = str(pool.get("type") or "").lower().replace("-", "_")
    if kind in (STAKING, "stake"):
        return STAKING
    if kind in (AUTO_VAULT, "vault", "auto_compounding"):
        return AUTO_VAULT
    if not (pool.get("token_y") or pool.get("token_y_symbol")):
        return STAKING
    return LP_FARMING


class AlexClient(ProtocolClient):
    """ALEX sBTC farms, vaults and staking pools."""

    def __init__(self, http: HttpClient, prices: PriceOracle, settings: Settings):
        super().__init__(http)
        self.prices = prices
        self.base_url = settings.ALEX_API_BASE.rstrip("/")
        self.contract_address = settings.ALEX_PROTOCOL_CONTRACT

    @property
    def protocol(self) -> Protocol:
        return Protocol.ALEX

    @property
    def health_url(self) -> str:
        return f"{self.base_url}/v1/public/pools"

    async def fetch_yield_opportunities(self) -> List[YieldOpportunity]:
        pools = await self._fetch_sbtc_pools()
        if not pools:
            logger.info("No sBTC pools listed on ALEX")
            return []

        btc_price = await self.prices.get_bitcoin_price()
        price_estimated = self.prices.last_was_estimate

        results = await asyncio.gather(
            *(self._fetch_farm(p, btc_price, price_estimated) for p in pools),
            return_exceptions=True,
        )
        out: List[YieldOpportunity] = []
        for pool, res in zip(pools, results):
            if isinstance(res, BaseException):
                logger.error(f"Failed to fetch ALEX farm {pool.get('pool_id')}: {res}")
                continue
            out.append(res)
        logger.info(f"Fetched {len(out)} ALEX yield farms")
        return out

    async def _fetch_sbtc_pools(self) -> List[Dict[str, Any]]:
        resp = await self.http.get(f"{self.base_url}/v1/public/pools")
        try:
            pools = data_list(resp.json(), "data", "pools")
        except ValueError as e:
            raise ProtocolAPIError(self.protocol.value, f"malformed pool listing: {e}") from e
        return [
            p
            for p in pools
            if p.get("pool_id") is not None
            and risk.is_sbtc_token(p.get("token_x"), p.get("token_y"), p.get("token_x_symbol"), p.get("token_y_symbol"))
        ]

    async def _fetch_farm(self, pool: Dict[str, Any], btc_price: float, price_estimated: bool) -> YieldOpportunity:
        resp = await self.http.get(f"{self.base_url}/v1/pool_stats/{pool['pool_id']}")
        stats = resp.json()
        if isinstance(stats, dict) and isinstance(stats.get("data"), dict):
            stats = stats["data"]
        if not isinstance(stats, dict) or "tvl_usd" not in stats:
            raise ProtocolAPIError(self.protocol.value, f"farm {pool['pool_id']} has no stats")
        return self.to_opportunity(pool, stats, btc_price, price_estimated)

    def to_opportunity(
        self,
        pool: Dict[str, Any],
        stats: Dict[str, Any],
        btc_price: float,
        price_estimated: bool = False,
    ) -> YieldOpportunity:
        kind = farm_type(pool)
        estimated: List[str] = []

        x_sym = pool.get("token_x_symbol")
        y_sym = pool.get("token_y_symbol")
        sbtc_is_x = risk.is_sbtc_token(x_sym, pool.get("token_x"))
        paired_symbol: Optional[str] = None if kind == STAKING else (y_sym if sbtc_is_x else x_sym)

        tvl = as_float(stats.get("tvl_usd"))
        volume_24h: Optional[float] = None
        if kind != STAKING and stats.get("volume_24h_usd") is not None:
            volume_24h = as_float(stats.get("volume_24h_usd"))
        fees_24h = as_float(stats.get("fees_24h_usd"))

        if stats.get("base_apy") is not None:
            base_apy = as_float(stats.get("base_apy"))
        else:
            base_apy = risk.trading_fee_apy(fees_24h, tvl)

        if stats.get("reward_apy") is not None:
            reward_apy = as_float(stats.get("reward_apy"))
        else:
            reward_apy = risk.estimate_reward_apy(tvl)
            estimated.append("apy_breakdown.rewards")

        total_apy = base_apy + reward_apy
        if total_apy > MAX_APY or base_apy < 0 or reward_apy < 0:
            raise ProtocolAPIError(self.protocol.value, f"farm {pool['pool_id']} reports implausible APY {total_apy:.2f}")

        if kind == STAKING:
            sbtc_usd = tvl
        elif stats.get("sbtc_tvl_usd") is not None:
            sbtc_usd = as_float(stats.get("sbtc_tvl_usd"))
        else:
            sbtc_usd = tvl / 2.0
            estimated.append("tvl_in_sbtc")
        if price_estimated and "tvl_in_sbtc" not in estimated:
            estimated.append("tvl_in_sbtc")

        impermanent_loss = kind == LP_FARMING
        extra: List[str] = []
        reward_price = stats.get("reward_token_price")
        if reward_price is not None:
            extra.append(f"Rewards paid in ALEX tokens - subject to price volatility (current: ${as_float(reward_price):.3f})")
        else:
            extra.append("Rewards paid in ALEX tokens - subject to price volatility")
        if kind == STAKING:
            extra.append(f"{STAKING_LOCK_DAYS}-day lock period - funds not accessible during this time")

        name = FARM_NAMES[kind].format(pair=paired_symbol or "ALEX")

        return YieldOpportunity(
            protocol=Protocol.ALEX,
            protocol_type=FARM_PROTOCOL_TYPES[kind],
            pool_id=str(pool["pool_id"]),
            pool_name=name,
            apy=total_apy,
            apy_breakdown=ApyBreakdown(base=base_apy, rewards=reward_apy),
            tvl=tvl,
            tvl_in_sbtc=sbtc_usd / btc_price if btc_price > 0 else 0.0,
            volume_24h=volume_24h,
            risk_level=risk.assess_risk_level(tvl, volume_24h, total_apy, paired_symbol),
            risk_factors=risk.risk_factors(tvl, volume_24h, total_apy, paired_symbol, impermanent_loss, extra),
            min_deposit=MIN_DEPOSIT_SATS,
            lock_period=STAKING_LOCK_DAYS if kind == STAKING else 0,
            deposit_fee=0.0,
            withdrawal_fee=VAULT_WITHDRAWAL_FEE if kind == AUTO_VAULT else 0.0,
            performance_fee=VAULT_PERFORMANCE_FEE if kind == AUTO_VAULT else 0.0,
            impermanent_loss_risk=impermanent_loss,
            audit_status=AuditStatus.AUDITED,
            protocol_age=PROTOCOL_AGE_DAYS,
            contract_address=self.contract_address,
            description=_describe(kind, total_apy, base_apy, reward_apy, paired_symbol),
            estimated_fields=estimated,
        )


def _describe(kind: str, total: float, base: float, rewards: float, paired: Optional[str]) -> str:
    if kind == STAKING:
        action = "staking sBTC"
    elif kind == LP_FARMING:
        action = f"providing sBTC-{paired or 'ALEX'} liquidity"
    else:
        action = "depositing in the auto-compounding vault"
    desc = f"Earn {total:.2f}% APY by {action}. Rewards: {base:.2f}% base + {rewards:.2f}% in ALEX tokens. "
    if kind == AUTO_VAULT:
        desc += f"Auto-compounds every {VAULT_COMPOUND_HOURS} hours. "
    return desc.strip()
