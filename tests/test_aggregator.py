import asyncio
import math

import httpx
import pytest

from bityield.models import Protocol, RiskLevel, RiskTolerance
from bityield.services.aggregator import (
    FilterCriteria,
    ProtocolAggregator,
    calculate_score,
    filter_opportunities,
    find_highest_apy,
    find_lowest_risk,
    get_top_opportunities,
    sort_opportunities,
)


def test_partial_failure_is_reported_not_raised(fake_client, make_opportunity):
    velar = fake_client(Protocol.VELAR, [make_opportunity(pool_id="v1", tvl=2_000_000.0), make_opportunity(pool_id="v2", tvl=1_000_000.0)])
    alex = fake_client(Protocol.ALEX, error=httpx.ConnectError("connection refused"))

    agg = ProtocolAggregator([velar, alex])
    data = asyncio.run(agg.fetch_all_opportunities())

    assert data.total_opportunities == 2
    assert data.total_tvl == 3_000_000.0
    by_protocol = {p.protocol: p for p in data.protocols}
    assert by_protocol[Protocol.VELAR].success is True
    assert by_protocol[Protocol.ALEX].success is False
    assert "connection refused" in by_protocol[Protocol.ALEX].error
    assert by_protocol[Protocol.ALEX].opportunities == []
    assert agg.last_refresh_at == data.updated_at
    assert agg.current() is data


def test_all_clients_failing(fake_client):
    agg = ProtocolAggregator([fake_client(Protocol.VELAR, error=RuntimeError("x")), fake_client(Protocol.ALEX, error=RuntimeError("y"))])
    data = asyncio.run(agg.fetch_all_opportunities())
    assert data.total_opportunities == 0
    assert data.highest_apy is None
    assert data.lowest_risk is None
    assert all(not p.success for p in data.protocols)


def test_highest_apy_keeps_first_of_ties(make_opportunity):
    opps = [
        make_opportunity(pool_id="a", apy=12.0),
        make_opportunity(pool_id="b", apy=15.0),
        make_opportunity(pool_id="c", apy=15.0),
    ]
    best = find_highest_apy(opps)
    assert best.pool_id == "b"
    assert best.apy == 15.0
    assert find_highest_apy([]) is None


def test_lowest_risk_ignores_high_risk(make_opportunity):
    opps = [
        make_opportunity(pool_id="huge-but-risky", tvl=50_000_000.0, risk_level=RiskLevel.HIGH),
        make_opportunity(pool_id="medium", tvl=9_000_000.0, risk_level=RiskLevel.MEDIUM),
        make_opportunity(pool_id="low", tvl=3_000_000.0, risk_level=RiskLevel.LOW),
    ]
    assert find_lowest_risk(opps).pool_id == "medium"
    assert find_lowest_risk(opps[:1]) is None


def test_calculate_score(make_opportunity):
    low = make_opportunity(apy=10.0, tvl=1_000_000.0, risk_level=RiskLevel.LOW)
    high = make_opportunity(apy=10.0, tvl=1_000_000.0, risk_level=RiskLevel.HIGH)
    tiny = make_opportunity(apy=10.0, tvl=10.0, risk_level=RiskLevel.LOW)
    assert calculate_score(low) == pytest.approx(60.0)
    assert calculate_score(high) == pytest.approx(24.0)
    # TVL is floored at 1000 before the log
    assert calculate_score(tiny) == pytest.approx(10.0 * math.log10(1000))


def test_empty_criteria_keeps_everything(make_opportunity):
    opps = [make_opportunity(pool_id=str(i), apy=float(i)) for i in range(5)]
    assert filter_opportunities(opps, FilterCriteria()) == opps


def test_filter_is_a_conjunction(make_opportunity):
    opps = [
        make_opportunity(pool_id="ok", apy=12.0, tvl=3_000_000.0, risk_level=RiskLevel.MEDIUM),
        make_opportunity(pool_id="low-apy", apy=4.0, tvl=3_000_000.0),
        make_opportunity(pool_id="too-risky", apy=12.0, tvl=3_000_000.0, risk_level=RiskLevel.HIGH),
        make_opportunity(pool_id="il", apy=12.0, tvl=3_000_000.0, impermanent_loss_risk=True),
        make_opportunity(pool_id="locked", apy=12.0, tvl=3_000_000.0, lock_period=30),
        make_opportunity(pool_id="alex", protocol=Protocol.ALEX, apy=12.0, tvl=3_000_000.0),
        make_opportunity(pool_id="small", apy=12.0, tvl=10_000.0),
    ]
    criteria = FilterCriteria(
        min_apy=5.0,
        max_apy=100.0,
        min_tvl=1_000_000.0,
        max_risk_level=RiskLevel.MEDIUM,
        protocols=[Protocol.VELAR],
        no_impermanent_loss=True,
        max_lock_period=7,
    )
    assert [o.pool_id for o in filter_opportunities(opps, criteria)] == ["ok"]


def test_missing_lock_period_counts_as_unlocked(make_opportunity):
    opps = [make_opportunity(pool_id="no-lock-info", lock_period=None)]
    assert len(filter_opportunities(opps, FilterCriteria(max_lock_period=0))) == 1


def test_sort_is_stable_both_directions(make_opportunity):
    opps = [
        make_opportunity(pool_id="a", apy=10.0),
        make_opportunity(pool_id="b", apy=20.0),
        make_opportunity(pool_id="c", apy=10.0),
    ]
    assert [o.pool_id for o in sort_opportunities(opps, "apy", "desc")] == ["b", "a", "c"]
    assert [o.pool_id for o in sort_opportunities(opps, "apy", "asc")] == ["a", "c", "b"]


def test_sort_by_risk_and_bad_arguments(make_opportunity):
    opps = [
        make_opportunity(pool_id="h", risk_level=RiskLevel.HIGH),
        make_opportunity(pool_id="l", risk_level=RiskLevel.LOW),
        make_opportunity(pool_id="m", risk_level=RiskLevel.MEDIUM),
    ]
    assert [o.pool_id for o in sort_opportunities(opps, "risk", "asc")] == ["l", "m", "h"]
    with pytest.raises(ValueError):
        sort_opportunities(opps, "volume")
    with pytest.raises(ValueError):
        sort_opportunities(opps, "apy", "sideways")


def test_top_opportunities_respect_tolerance(make_opportunity):
    opps = [
        make_opportunity(pool_id="high", apy=40.0, risk_level=RiskLevel.HIGH),
        make_opportunity(pool_id="medium", apy=20.0, risk_level=RiskLevel.MEDIUM),
        make_opportunity(pool_id="low-a", apy=8.0),
        make_opportunity(pool_id="low-b", apy=9.0),
    ]
    assert [o.pool_id for o in get_top_opportunities(opps, 5, RiskTolerance.CONSERVATIVE)] == ["low-b", "low-a"]
    assert [o.pool_id for o in get_top_opportunities(opps, 2, RiskTolerance.MODERATE)] == ["medium", "low-b"]
    assert len(get_top_opportunities(opps, 10, RiskTolerance.AGGRESSIVE)) == 4
    assert get_top_opportunities(opps, 0) == []


def test_score_orders_risk_levels_strictly(make_opportunity):
    scores = [calculate_score(make_opportunity(apy=12.0, tvl=4_000_000.0, risk_level=r)) for r in (RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH)]
    assert scores[0] > scores[1] > scores[2]


def test_score_rises_with_apy_and_tvl(make_opportunity):
    base = calculate_score(make_opportunity(apy=10.0, tvl=2_000_000.0))
    assert calculate_score(make_opportunity(apy=11.0, tvl=2_000_000.0)) > base
    assert calculate_score(make_opportunity(apy=10.0, tvl=20_000_000.0)) > base


def test_sort_by_score_descending(make_opportunity):
    opps = [
        make_opportunity(pool_id="a", apy=8.0, tvl=15_000_000.0, risk_level=RiskLevel.LOW),
        make_opportunity(pool_id="b", apy=22.5, tvl=8_000_000.0, risk_level=RiskLevel.HIGH),
        make_opportunity(pool_id="c", apy=12.0, tvl=6_000_000.0, risk_level=RiskLevel.MEDIUM),
        make_opportunity(pool_id="d", apy=30.0, tvl=500_000.0, risk_level=RiskLevel.HIGH),
    ]
    scores = [calculate_score(o) for o in sort_opportunities(opps, "score", "desc")]
    assert all(a >= b for a, b in zip(scores, scores[1:]))
    assert len(scores) == 4
