import asyncio

import httpx
import pytest
from fastapi import Request
from fastapi.responses import Response
from fastapi.testclient import TestClient

from bityield.background import YieldUpdater
from bityield.http import HttpClient
from bityield.main import Services, create_app
from bityield.middleware.rate_limit import client_ip, rate_limiter
from bityield.models import Protocol
from bityield.services.ai import RecommendationService
from bityield.services.aggregator import ProtocolAggregator
from bityield.services.cache import Cache
from bityield.services.recommender import RuleBasedRecommender
from bityield.services.store import InMemoryStore


def build_services(settings, clients):
    http = HttpClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    store = InMemoryStore()
    cache = Cache(store, settings.CACHE_TTL_SECONDS, settings.CACHE_STALE_SECONDS)
    aggregator = ProtocolAggregator(clients)
    return Services(
        settings=settings,
        http=http,
        store=store,
        cache=cache,
        aggregator=aggregator,
        recommender=RecommendationService(settings, RuleBasedRecommender(settings)),
        updater=YieldUpdater(aggregator, cache, settings),
    )


@pytest.fixture
def clients(fake_client, scenario):
    velar = [o for o in scenario if o.protocol == Protocol.VELAR]
    alex = [o for o in scenario if o.protocol == Protocol.ALEX]
    return [fake_client(Protocol.VELAR, velar), fake_client(Protocol.ALEX, alex)]


@pytest.fixture
def api(settings, clients):
    services = build_services(settings, clients)
    with TestClient(create_app(services=services)) as client:
        yield client


def test_liveness_and_banner(api):
    assert api.get("/health").json() == {"status": "ok"}
    banner = api.get("/").json()
    assert banner["name"] == "BitYield API"
    assert banner["endpoints"]["recommend"] == "/api/recommend"


def test_yields_are_fetched_once_then_cached(api, clients):
    first = api.get("/api/yields")
    second = api.get("/api/yields")
    assert first.status_code == 200
    body = second.json()
    assert body["total_opportunities"] == 3
    assert body["stale"] is False
    assert "opportunities" not in body
    assert [c.calls for c in clients] == [1, 1]


def test_yield_filters_and_sorting(api):
    body = api.get("/api/yields", params={"max_risk": "medium", "sort_by": "apy", "direction": "asc"}).json()
    assert [o["pool_id"] for o in body["opportunities"]] == ["sbtc-lending", "alex-sbtc-staking"]

    body = api.get("/api/yields", params={"no_il": "true", "max_lock": 0}).json()
    assert [o["pool_id"] for o in body["opportunities"]] == ["sbtc-lending"]

    body = api.get("/api/yields", params=[("protocol", "velar")]).json()
    assert [o["pool_id"] for o in body["opportunities"]] == ["velar-sbtc-stx"]


def test_invalid_query_is_rejected(api):
    assert api.get("/api/yields", params={"sort_by": "volume"}).status_code == 422
    assert api.get("/api/yields", params={"max_risk": "extreme"}).status_code == 422


def test_top_yields(api):
    body = api.get("/api/yields/top", params={"risk_tolerance": "conservative"}).json()
    assert [o["pool_id"] for o in body] == ["sbtc-lending"]
    body = api.get("/api/yields/top", params={"limit": 2, "risk_tolerance": "aggressive"}).json()
    assert len(body) == 2


def test_protocol_yields(api):
    body = api.get("/api/yields/velar").json()
    assert body["protocol"] == "velar"
    assert body["success"] is True
    assert len(body["opportunities"]) == 1
    assert api.get("/api/yields/zest").status_code == 404


def test_protocol_snapshot_follows_request_path_refresh(settings, clients):
    alex = clients[1]
    alex.error = RuntimeError("alex api down")
    with TestClient(create_app(services=build_services(settings, clients))) as client:
        assert client.post("/api/yields/refresh").json()["success"] is True
        assert client.get("/api/yields/alex").json()["success"] is False

        alex.error = None
        client.delete("/api/cache", params={"pattern": "yield:all-*"})
        assert client.get("/api/yields").status_code == 200

        body = client.get("/api/yields/alex").json()
        assert body["success"] is True
        assert len(body["opportunities"]) == 2


def test_recommend(api):
    resp = api.post("/api/recommend", json={"amount": 100_000_000, "risk_tolerance": "conservative"})
    assert resp.status_code == 200
    rec = resp.json()
    assert rec["pool_id"] == "sbtc-lending"
    assert rec["source"] == "rule_based"
    assert rec["projected_earnings"]["yearly"] == pytest.approx(8_500_000)
    assert 0.0 <= rec["confidence_score"] <= 1.0


def test_recommend_validation_and_no_match(api):
    assert api.post("/api/recommend", json={"amount": -5, "risk_tolerance": "moderate"}).status_code == 422
    assert api.post("/api/recommend", json={"amount": 1000, "risk_tolerance": "reckless"}).status_code == 422
    resp = api.post("/api/recommend", json={"amount": 1000, "risk_tolerance": "moderate", "min_apy": 90})
    assert resp.status_code == 404


def test_no_data_returns_503(settings, fake_client):
    dead = [fake_client(Protocol.VELAR, error=RuntimeError("down")), fake_client(Protocol.ALEX, error=RuntimeError("down"))]
    with TestClient(create_app(services=build_services(settings, dead))) as client:
        assert client.get("/api/yields").status_code == 503
        assert client.post("/api/recommend", json={"amount": 1000, "risk_tolerance": "moderate"}).status_code == 503


def test_health(api):
    resp = api.get("/api/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["services"]["protocols"] == {"velar": "up", "alex": "up"}
    assert body["services"]["ai"]["status"] == "disabled"


def test_health_degraded_when_a_protocol_is_down(settings, fake_client, make_opportunity):
    clients = [fake_client(Protocol.VELAR, [make_opportunity()]), fake_client(Protocol.ALEX, healthy=False)]
    with TestClient(create_app(services=build_services(settings, clients))) as client:
        client.get("/api/yields")
        resp = client.get("/api/health")
    assert resp.status_code == 503
    body = resp.json()
    assert body["status"] == "degraded"
    assert body["data_freshness"]["stalest"] is not None


def test_manual_refresh_and_cache_clear(api):
    resp = api.post("/api/yields/refresh").json()
    assert resp["success"] is True
    assert resp["stats"]["update_count"] == 1

    assert api.delete("/api/cache", params={"pattern": "yield:protocol:*"}).json()["cleared"] == 2
    assert api.delete("/api/cache").json()["cleared"] == -1


def test_rate_limit(settings, clients):
    settings = settings.model_copy(update={"API_RATE_LIMIT": 2, "API_RATE_WINDOW_SECONDS": 3600})
    with TestClient(create_app(services=build_services(settings, clients))) as client:
        assert client.get("/api/yields/top").status_code == 200
        assert client.get("/api/yields/top").status_code == 200
        limited = client.get("/api/yields/top")
        assert limited.status_code == 429
        assert "Retry-After" in limited.headers
        # liveness stays reachable
        assert client.get("/health").status_code == 200


def test_rate_limit_ignores_forwarded_header(settings, clients):
    settings = settings.model_copy(update={"API_RATE_LIMIT": 2, "API_RATE_WINDOW_SECONDS": 3600})
    with TestClient(create_app(services=build_services(settings, clients))) as client:
        codes = [client.get("/api/yields/top", headers={"X-Forwarded-For": f"10.0.0.{i}"}).status_code for i in range(6)]
    assert codes == [200, 200, 429, 429, 429, 429]


class StepClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _request(ip, path="/api/yields", headers=None):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": path, "query_string": b"", "headers": raw, "client": (ip, 4321)})


async def _ok(request):
    return Response("ok")


def test_client_ip_prefers_forwarded_for_logging():
    assert client_ip(_request("1.2.3.4", headers={"X-Forwarded-For": "9.9.9.9, 10.0.0.1"})) == "9.9.9.9"
    assert client_ip(_request("1.2.3.4")) == "1.2.3.4"


def test_expired_rate_windows_are_purged_from_memory_store():
    clock = StepClock()
    store = InMemoryStore(clock, sweep_every=10)

    async def scenario():
        for i in range(5000):
            resp = await rate_limiter(_request(f"10.{i // 256}.{i % 256}.1"), _ok, store, limit=5, window_seconds=60)
            assert resp.status_code == 200
        assert len(store) == 5000

        clock.now += 10_000
        for i in range(10):
            await rate_limiter(_request(f"192.168.0.{i}"), _ok, store, limit=5, window_seconds=60)

    asyncio.run(scenario())
    assert len(store) == 10
