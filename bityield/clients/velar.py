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

MIN_DEPOSIT_SATS = 5_000_000  # 0.05 sBTC
WITHDRAWAL_FEE = 0.1
PROTOCOL_AGE_DAYS = 240
MAX_APY = 10_000.0


class VelarClient(ProtocolClient):
    """Velar DEX sBTC liquidity pools.

    The pool listing decides which pairs are relevant; stats for each pair
    are then fetched concurrently from the pair endpoint.
    """

    def __init__(self, http: HttpClient, prices: PriceOracle, settings: Settings):
        super().__init__(http)
        self.prices = prices
        self.base_url = settings.VELAR_API_BASE.rstrip("/")
        self.contract_address = settings.VELAR_DEX_CONTRACT

    @property
    def protocol(self) -> Protocol:
        return Protocol.VELAR

    @property
    def health_url(self) -> str:
        return f"{self.base_url}/tokens"

    async def fetch_yield_opportunities(self) -> List[YieldOpportunity]:
        pools = await self._fetch_sbtc_pools()
        if not pools:
            logger.info("No sBTC pools listed on Velar")
            return []

        btc_price = await self.prices.get_bitcoin_price()
        price_estimated = self.prices.last_was_estimate

        results = await asyncio.gather(
            *(self._fetch_pool(p, btc_price, price_estimated) for p in pools),
            return_exceptions=True,
        )
        out: List[YieldOpportunity] = []
        for pool, res in zip(pools, results):
            if isinstance(res, BaseException):
                logger.error(f"Failed to process Velar pool {pool.get('symbol')}: {res}")
                continue
            out.append(res)
        logger.info(f"Fetched {len(out)} Velar LP pools")
        return out

    async def _fetch_sbtc_pools(self) -> List[Dict[str, Any]]:
        resp = await self.http.get(f"{self.base_url}/pools")
        try:
            pools = data_list(resp.json(), "data", "pools")
        except ValueError as e:
            raise ProtocolAPIError(self.protocol.value, f"malformed pool listing: {e}") from e

        sbtc = [
            p
            for p in pools
            if risk.is_sbtc_token(
                p.get("token0Symbol"),
                p.get("token1Symbol"),
                p.get("token0ContractAddress"),
                p.get("token1ContractAddress"),
            )
        ]
        logger.info(f"Found {len(sbtc)} sBTC pools on Velar: {[p.get('symbol') for p in sbtc]}")
        return sbtc

    async def _fetch_pool(self, listed: Dict[str, Any], btc_price: float, price_estimated: bool) -> YieldOpportunity:
        token0 = listed.get("token0ContractAddress")
        token1 = listed.get("token1ContractAddress")
        if not token0 or not token1:
            raise ProtocolAPIError(self.protocol.value, f"pool {listed.get('symbol')} has no token contracts")

        resp = await self.http.get(f"{self.base_url}/pools/{token0}/{token1}")
        payload = resp.json()
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        if not isinstance(payload, dict) or not isinstance(payload.get("stats"), dict):
            raise ProtocolAPIError(self.protocol.value, f"pool {listed.get('symbol')} has no stats")
        return self.to_opportunity({**listed, **payload}, btc_price, price_estimated)

    def to_opportunity(self, pool: Dict[str, Any], btc_price: float, price_estimated: bool = False) -> YieldOpportunity:
        stats = pool["stats"]
        estimated: List[str] = []

        tvl_field = stats.get("tvl_usd") or {}
        tvl = as_float(tvl_field)
        volume_24h = as_float(stats.get("volume_usd"))
        fees_24h = as_float(stats.get("fees_usd"))

        token0_addr = str(pool.get("token0ContractAddress") or "")
        sbtc_is_token0 = risk.is_sbtc_token(pool.get("token0Symbol"), token0_addr)
        sbtc_contract = token0_addr if sbtc_is_token0 else str(pool.get("token1ContractAddress") or "")
        paired_symbol = pool.get("token1Symbol") if sbtc_is_token0 else pool.get("token0Symbol")

        sbtc_usd: Optional[float] = None
        if isinstance(tvl_field, dict) and sbtc_contract in tvl_field:
            sbtc_usd = as_float(tvl_field[sbtc_contract])
        if sbtc_usd is None:
            # Balanced-pool assumption
            sbtc_usd = tvl / 2.0
            estimated.append("tvl_in_sbtc")
        if price_estimated and "tvl_in_sbtc" not in estimated:
            estimated.append("tvl_in_sbtc")
        tvl_in_sbtc = sbtc_usd / btc_price if btc_price > 0 else 0.0

        fee_apy = risk.trading_fee_apy(fees_24h, tvl)
        reward_apy = _parse_apy(stats.get("apy"))
        if reward_apy is None:
            reward_apy = risk.estimate_reward_apy(tvl)
            estimated.append("apy_breakdown.rewards")

        total_apy = fee_apy + reward_apy
        if total_apy > MAX_APY:
            raise ProtocolAPIError(self.protocol.value, f"pool {pool.get('symbol')} reports implausible APY {total_apy:.2f}")

        pool_name = f"{pool.get('token0Symbol')}-{pool.get('token1Symbol')} LP"
        level = risk.assess_risk_level(tvl, volume_24h, total_apy, paired_symbol)

        return YieldOpportunity(
            protocol=Protocol.VELAR,
            protocol_type=ProtocolType.LIQUIDITY_POOL,
            pool_id=str(pool.get("lpTokenContractAddress") or pool.get("symbol")),
            pool_name=pool_name,
            apy=total_apy,
            apy_breakdown=ApyBreakdown(base=fee_apy, rewards=reward_apy, fees=fee_apy),
            tvl=tvl,
            tvl_in_sbtc=tvl_in_sbtc,
            volume_24h=volume_24h,
            risk_level=level,
            risk_factors=risk.risk_factors(tvl, volume_24h, total_apy, paired_symbol, impermanent_loss=True),
            min_deposit=MIN_DEPOSIT_SATS,
            lock_period=0,
            deposit_fee=0.0,
            withdrawal_fee=WITHDRAWAL_FEE,
            performance_fee=0.0,
            impermanent_loss_risk=True,
            audit_status=AuditStatus.AUDITED,
            protocol_age=PROTOCOL_AGE_DAYS,
            contract_address=self.contract_address,
            description=(
                f"Provide {pool_name} liquidity on Velar to earn {total_apy:.2f}% APY from trading fees "
                f"({fee_apy:.2f}%) and VELAR rewards ({reward_apy:.2f}%). Warning: Subject to impermanent loss."
            ),
            estimated_fields=estimated,
        )


def _parse_apy(value: Any) -> Optional[float]:
    """Velar reports reward APY as a string, ``"--"`` when it has none."""
    if value is None or value == "--" or value == "":
        return None
    try:
        apy = float(str(value).rstrip("%"))
    except ValueError:
        return None
    return apy if apy >= 0 else None
