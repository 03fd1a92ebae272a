import asyncio
from datetime import datetime

import pytest

from models.cod import RiskLevel
from utils.risk import build_profile, compute_risk_score, risk_level_for


class TestScore:
    def test_neutral_without_history(self):
        assert compute_risk_score(0, 0, 0.0) == 50

    def test_success_reduction_is_capped(self):
        assert compute_risk_score(2, 0, 0.0) == 40
        assert compute_risk_score(20, 0, 0.0) == 20

    def test_failure_increase_is_capped(self):
        assert compute_risk_score(0, 1, 0.0) == 60
        assert compute_risk_score(0, 10, 0.0) == 90

    def test_return_rate_weight(self):
        assert compute_risk_score(0, 0, 0.5) == 60
        assert compute_risk_score(0, 0, 1.0) == 70

    def test_clamped_to_range(self):
        assert 0 <= compute_risk_score(100, 0, 0.0) <= 100
        assert compute_risk_score(0, 100, 1.0) == 100

    @pytest.mark.parametrize("score,level", [
        (0, RiskLevel.LOW),
        (29, RiskLevel.LOW),
        (30, RiskLevel.MEDIUM),
        (69, RiskLevel.MEDIUM),
        (70, RiskLevel.HIGH),
        (100, RiskLevel.HIGH),
    ])
    def test_level_boundaries(self, score, level):
        assert risk_level_for(score) == level


class TestProfile:
    def test_build_from_counters(self):
        profile = build_profile(
            "cust_1",
            {"total_orders": 4, "successful_cod_orders": 3, "failed_cod_orders": 1, "returned_orders": 2},
            datetime(2026, 1, 1),
        )
        assert profile.return_rate == 0.5
        # 50 - 15 + 10 + 10
        assert profile.risk_score == 55
        assert profile.risk_level == RiskLevel.MEDIUM

    def test_return_rate_capped_at_one(self):
        profile = build_profile("cust_1", {"total_orders": 1, "returned_orders": 3}, datetime(2026, 1, 1))
        assert profile.return_rate == 1.0

    def test_empty_counters(self):
        profile = build_profile("cust_1", {}, datetime(2026, 1, 1))
        assert profile.total_orders == 0
        assert profile.return_rate == 0.0
        assert profile.risk_score == 50


class TestScorer:
    def test_unknown_customer_is_neutral(self, settlement):
        profile = asyncio.run(settlement.scorer.get_profile("cust_new"))
        assert profile.risk_score == 50
        assert profile.risk_level == RiskLevel.MEDIUM

    def test_outcomes_update_profile(self, settlement):
        async def scenario():
            await settlement.scorer.record_order_outcome("cust_1", delivered=True)
            await settlement.scorer.record_order_outcome("cust_1", delivered=True, returned=True)
            return await settlement.scorer.get_profile("cust_1")

        profile = asyncio.run(scenario())
        assert profile.total_orders == 2
        assert profile.successful_cod_orders == 2
        assert profile.returned_orders == 1
        assert profile.risk_score == 50

    def test_cached_profile_expires(self, settlement, clock):
        async def scenario():
            await settlement.scorer.record_order_outcome("cust_1", delivered=False)
            first = await settlement.scorer.get_profile("cust_1")
            # counters change behind the cache
            await settlement.scorer.repo.incr("cust_1", "failed_cod_orders")
            cached = await settlement.scorer.get_profile("cust_1")
            clock.advance(hours=2)
            refreshed = await settlement.scorer.get_profile("cust_1")
            return first, cached, refreshed

        first, cached, refreshed = asyncio.run(scenario())
        assert first.risk_score == 60
        assert cached.risk_score == 60
        assert refreshed.risk_score == 70
        assert refreshed.risk_level == RiskLevel.HIGH

    def test_record_return(self, settlement):
        async def scenario():
            await settlement.scorer.record_order_outcome("cust_1", delivered=True)
            return await settlement.scorer.record_return("cust_1")

        profile = asyncio.run(scenario())
        assert profile.return_rate == 1.0
        # 50 - 5 + 20
        assert profile.risk_score == 65

    def test_unknown_counter_rejected(self, settlement):
        with pytest.raises(ValueError):
            asyncio.run(settlement.scorer.repo.incr("cust_1", "bogus"))
