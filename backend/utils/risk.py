import logging
from datetime import datetime

from config.constants import (
    RISK_FAILURE_INCREASE,
    RISK_HIGH_FROM,
    RISK_LOW_BELOW,
    RISK_MAX_FAILURE_INCREASE,
    RISK_MAX_SUCCESS_REDUCTION,
    RISK_NEUTRAL_SCORE,
    RISK_RETURN_RATE_WEIGHT,
    RISK_SUCCESS_REDUCTION,
)
from models.cod import CustomerRiskProfile, RiskLevel
from utils.repositories import RiskProfileRepository

logger = logging.getLogger(__name__)


def compute_risk_score(successful_cod_orders: int, failed_cod_orders: int, return_rate: float) -> int:
    score = RISK_NEUTRAL_SCORE
    score -= min(RISK_MAX_SUCCESS_REDUCTION, successful_cod_orders * RISK_SUCCESS_REDUCTION)
    score += min(RISK_MAX_FAILURE_INCREASE, failed_cod_orders * RISK_FAILURE_INCREASE)
    score += int(return_rate * RISK_RETURN_RATE_WEIGHT)
    return max(0, min(100, score))


def risk_level_for(score: int) -> RiskLevel:
    if score < RISK_LOW_BELOW:
        return RiskLevel.LOW
    if score < RISK_HIGH_FROM:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


def build_profile(customer_id: str, counters: dict[str, int], computed_at: datetime) -> CustomerRiskProfile:
    total = counters.get("total_orders", 0)
    returned = counters.get("returned_orders", 0)
    return_rate = min(1.0, returned / total) if total else 0.0

    score = compute_risk_score(
        counters.get("successful_cod_orders", 0),
        counters.get("failed_cod_orders", 0),
        return_rate,
    )
    return CustomerRiskProfile(
        customer_id=customer_id,
        total_orders=total,
        successful_cod_orders=counters.get("successful_cod_orders", 0),
        failed_cod_orders=counters.get("failed_cod_orders", 0),
        returned_orders=returned,
        return_rate=return_rate,
        risk_score=score,
        risk_level=risk_level_for(score),
        computed_at=computed_at,
    )


class CustomerRiskScorer:
    """
    Per-buyer COD risk.

    Outcome counters are durable and updated with atomic increments; the
    derived profile is a cache with a bounded TTL, rebuilt from the counters
    when it expires. A buyer without history gets the neutral profile.
    """

    def __init__(self, repo: RiskProfileRepository, cache_seconds: int = 86400, clock=datetime.utcnow):
        self.repo = repo
        self.cache_seconds = cache_seconds
        self._clock = clock

    async def get_profile(self, customer_id: str) -> CustomerRiskProfile:
        cached = await self.repo.get_cached(customer_id)
        if cached:
            return cached
        return await self._refresh(customer_id)

    async def _refresh(self, customer_id: str) -> CustomerRiskProfile:
        profile = build_profile(customer_id, await self.repo.counters(customer_id), self._clock())
        await self.repo.cache(profile, self.cache_seconds)
        return profile

    async def record_order_outcome(self, customer_id: str, delivered: bool, returned: bool = False) -> CustomerRiskProfile:
        await self.repo.incr(customer_id, "total_orders")
        if delivered:
            await self.repo.incr(customer_id, "successful_cod_orders")
        else:
            await self.repo.incr(customer_id, "failed_cod_orders")
        if returned:
            await self.repo.incr(customer_id, "returned_orders")

        profile = await self._refresh(customer_id)
        logger.info(
            "RISK_PROFILE_UPDATED customer=%s score=%s level=%s",
            customer_id,
            profile.risk_score,
            profile.risk_level.value,
        )
        return profile

    async def record_return(self, customer_id: str) -> CustomerRiskProfile:
        """A return on an order already counted as delivered."""
        await self.repo.incr(customer_id, "returned_orders")
        profile = await self._refresh(customer_id)
        logger.info("RISK_PROFILE_RETURN customer=%s score=%s", customer_id, profile.risk_score)
        return profile
