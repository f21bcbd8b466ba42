from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from bityield.background import YieldUpdater
from bityield.clients.alex import AlexClient
from bityield.clients.llm import LLMClient
from bityield.clients.prices import PriceOracle
from bityield.clients.velar import VelarClient
from bityield.config import Settings, get_settings
from bityield.errors import NoSuitableOpportunityError, NoYieldDataError
from bityield.http import HttpClient
from bityield.middleware.rate_limit import client_ip, rate_limiter
from bityield.models import (
    AggregatedYieldData,
    DataFreshness,
    HealthCheck,
    Protocol,
    ProtocolData,
    Recommendation,
    RiskLevel,
    RiskTolerance,
    UserPreference,
    YieldOpportunity,
)
from bityield.services.ai import AIRecommender, RecommendationService
from bityield.services.aggregator import FilterCriteria, ProtocolAggregator, SORT_KEYS
from bityield.services.cache import ALL_OPPORTUNITIES_KEY, Cache, protocol_key
from bityield.services.recommender import RuleBasedRecommender
from bityield.services.store import InMemoryStore
from bityield.utils.logging import setup_logging
from bityield.utils.loki import LokiShipper

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


@dataclass
class Services:
    settings: Settings
    http: HttpClient
    store: Any
    cache: Cache
    aggregator: ProtocolAggregator
    recommender: RecommendationService
    updater: YieldUpdater
    llm: Optional[LLMClient] = None
    loki: Optional[LokiShipper] = None


def build_services(settings: Settings) -> Services:
    http = HttpClient(timeout=settings.HTTP_TIMEOUT_SECONDS)
    if settings.ENABLE_REDIS:
        store = Redis.from_url(settings.REDIS_URL, decode_responses=False)
    else:
        store = InMemoryStore()
    cache = Cache(store, default_ttl=settings.CACHE_TTL_SECONDS, stale_threshold=settings.CACHE_STALE_SECONDS)

    prices = PriceOracle(http, settings)
    aggregator = ProtocolAggregator([VelarClient(http, prices, settings), AlexClient(http, prices, settings)])

    llm = LLMClient(http, settings)
    recommender = RecommendationService(settings, RuleBasedRecommender(settings), AIRecommender(llm, settings))

    return Services(
        settings=settings,
        http=http,
        store=store,
        cache=cache,
        aggregator=aggregator,
        recommender=recommender,
        updater=YieldUpdater(aggregator, cache, settings),
        llm=llm,
        loki=LokiShipper(http, settings.LOKI_URL, settings.ENV) if settings.LOKI_URL else None,
    )


async def _aggregate(services: Services) -> AggregatedYieldData:
    data = await services.aggregator.fetch_all_opportunities()
    if data.total_opportunities == 0:
        raise NoYieldDataError("No yield opportunities available from any protocol")
    for p in data.protocols:
        await services.cache.set(protocol_key(p.protocol.value), p)
    return data


async def load_yields(services: Services) -> tuple[AggregatedYieldData, bool]:
    try:
        raw, stale = await services.cache.get_with_stale_fallback(ALL_OPPORTUNITIES_KEY, lambda: _aggregate(services))
    except NoYieldDataError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return AggregatedYieldData.model_validate(raw), stale


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else get_settings())
    services = services or build_services(settings)

    app = FastAPI(title="BitYield sBTC Yield API", version=VERSION)
    app.state.services = services

    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    @app.middleware("http")
    async def _rate_limit(request: Request, call_next):
        return await rate_limiter(
            request,
            call_next,
            services.store,
            settings.API_RATE_LIMIT,
            settings.API_RATE_WINDOW_SECONDS,
        )

    @app.middleware("http")
    async def _request_logger(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - start) * 1000.0
        logger.info(f"{request.method} {request.url.path} {response.status_code} {elapsed:.1f}ms")
        if services.loki is not None:
            await services.loki.log(
                "INFO",
                "request",
                extra={
                    "path": str(request.url.path),
                    "method": request.method,
                    "status": response.status_code,
                    "duration_ms": round(elapsed, 1),
                    "client_ip": client_ip(request),
                },
            )
        return response

    @app.on_event("startup")
    async def startup_event() -> None:
        setup_logging(settings.LOG_LEVEL)
        logger.info(
            f"Starting BitYield API env={settings.ENV} redis={settings.ENABLE_REDIS} "
            f"ai={'on' if services.recommender.ai_available else 'off'}"
        )
        if settings.ENABLE_BACKGROUND_UPDATER:
            await services.updater.start()

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        await services.updater.stop()
        await services.cache.close()
        await services.http.aclose()

    @app.get("/")
    async def root():
        return {
            "name": "BitYield API",
            "version": VERSION,
            "description": "AI-powered sBTC yield aggregation and recommendations",
            "endpoints": {
                "health": "/api/health",
                "yields": "/api/yields",
                "top": "/api/yields/top",
                "protocol": "/api/yields/{protocol}",
                "recommend": "/api/recommend",
                "refresh": "/api/yields/refresh",
                "cache": "/api/cache",
            },
        }

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/health", response_model=HealthCheck)
    async def api_health():
        cache_health = await services.cache.health_check()

        clients = services.aggregator.clients
        checks = await asyncio.gather(*(c.health_check() for c in clients))
        protocols = {c.protocol.value: h.status for c, h in zip(clients, checks)}

        if services.llm is not None and services.recommender.ai_available:
            ai = (await services.llm.health_check()).model_dump(exclude_none=True)
        else:
            ai = {"status": "disabled", "model": settings.OPENAI_MODEL}

        freshness = DataFreshness()
        for key in [ALL_OPPORTUNITIES_KEY] + [protocol_key(p) for p in protocols]:
            entry = await services.cache.get_entry(key)
            if entry is None:
                continue
            age = max(0.0, (time.time() * 1000 - entry.cached_at) / 1000.0)
            if freshness.oldest_data is None or age > freshness.oldest_data:
                freshness = DataFreshness(oldest_data=round(age, 1), stalest=key)

        up = [s for s in protocols.values() if s == "up"]
        if cache_health.status != "up" or not up:
            status = "unhealthy"
        elif len(up) < len(protocols) or ai["status"] == "down":
            status = "degraded"
        else:
            status = "healthy"

        body = HealthCheck(
            status=status,
            services={
                "cache": cache_health.model_dump(exclude_none=True),
                "ai": ai,
                "protocols": protocols,
                "updater": services.updater.get_stats(),
            },
            data_freshness=freshness,
        )
        if status != "healthy":
            return JSONResponse(status_code=503, content=body.model_dump(mode="json"))
        return body

    @app.get("/api/yields")
    async def get_yields(
        min_apy: Optional[float] = Query(None, ge=0.0),
        max_apy: Optional[float] = Query(None, ge=0.0),
        min_tvl: Optional[float] = Query(None, ge=0.0),
        max_risk: Optional[RiskLevel] = None,
        protocol: Optional[List[Protocol]] = Query(None),
        no_il: bool = False,
        max_lock: Optional[int] = Query(None, ge=0),
        sort_by: Optional[str] = Query(None, pattern="^(" + "|".join(SORT_KEYS) + ")$"),
        direction: str = Query("desc", pattern="^(asc|desc)$"),
    ):
        data, stale = await load_yields(services)
        body: Dict[str, Any] = {**data.model_dump(mode="json"), "stale": stale}

        criteria = FilterCriteria(
            min_apy=min_apy,
            max_apy=max_apy,
            min_tvl=min_tvl,
            max_risk_level=max_risk,
            protocols=protocol,
            no_impermanent_loss=no_il,
            max_lock_period=max_lock,
        )
        if criteria != FilterCriteria() or sort_by is not None:
            opportunities = services.aggregator.filter_opportunities(data.all_opportunities(), criteria)
            if sort_by is not None:
                opportunities = services.aggregator.sort_opportunities(opportunities, sort_by, direction)
            body["opportunities"] = [o.model_dump(mode="json") for o in opportunities]
        return body

    @app.get("/api/yields/top", response_model=List[YieldOpportunity])
    async def get_top_yields(
        limit: int = Query(5, ge=1, le=50),
        risk_tolerance: RiskTolerance = RiskTolerance.MODERATE,
    ):
        data, _ = await load_yields(services)
        return services.aggregator.get_top_opportunities(data.all_opportunities(), limit, risk_tolerance)

    @app.get("/api/yields/{protocol}", response_model=ProtocolData)
    async def get_protocol_yields(protocol: str):
        if protocol.lower() not in {p.value for p in Protocol}:
            raise HTTPException(status_code=404, detail=f"Unknown protocol: {protocol}")

        cached = await services.cache.get(protocol_key(protocol.lower()))
        if cached is not None:
            return ProtocolData.model_validate(cached)

        data, _ = await load_yields(services)
        found = data.for_protocol(protocol)
        if found is None:
            raise HTTPException(status_code=404, detail=f"No data for protocol: {protocol}")
        return found

    @app.post("/api/recommend", response_model=Recommendation)
    async def post_recommend(pref: UserPreference):
        data, _ = await load_yields(services)
        try:
            return await services.recommender.recommend(data.all_opportunities(), pref)
        except NoSuitableOpportunityError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except NoYieldDataError as e:
            raise HTTPException(status_code=503, detail=str(e))

    @app.post("/api/yields/refresh")
    async def post_refresh():
        ok = await services.updater.trigger_update()
        return {"success": ok, "stats": services.updater.get_stats()}

    @app.delete("/api/cache")
    async def delete_cache(pattern: Optional[str] = None):
        if pattern:
            cleared = await services.cache.delete_pattern(pattern)
        else:
            await services.cache.flush()
            cleared = -1
        return {"cleared": cleared, "pattern": pattern}

    return app


app = create_app()
