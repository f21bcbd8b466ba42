import pytest
from pydantic import ValidationError

from bityield.models import ApyBreakdown


def test_breakdown_must_add_up_to_apy(make_opportunity):
    with pytest.raises(ValidationError, match="does not match apy"):
        make_opportunity(apy=10.0, apy_breakdown=ApyBreakdown(base=4.0, rewards=5.85))


def test_breakdown_within_tolerance_is_accepted(make_opportunity):
    opp = make_opportunity(apy=10.0, apy_breakdown=ApyBreakdown(base=4.0, rewards=5.95))
    assert opp.apy_breakdown.rewards == 5.95


def test_breakdown_without_rewards_compares_base_only(make_opportunity):
    assert make_opportunity(apy=3.0, apy_breakdown=ApyBreakdown(base=3.0)).apy == 3.0
    with pytest.raises(ValidationError):
        make_opportunity(apy=3.0, apy_breakdown=ApyBreakdown(base=2.5))


def test_opportunities_are_frozen(make_opportunity):
    opp = make_opportunity()
    with pytest.raises(ValidationError):
        opp.apy = 99.0
