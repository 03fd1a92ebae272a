import logging

from models.payout import Payout, PayoutStatus
from utils.errors import IllegalTransition

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[PayoutStatus, set[PayoutStatus]] = {
    PayoutStatus.PENDING: {PayoutStatus.PROCESSING, PayoutStatus.FAILED},
    PayoutStatus.PROCESSING: {PayoutStatus.COMPLETED, PayoutStatus.FAILED},
    PayoutStatus.FAILED: {PayoutStatus.PENDING},
    PayoutStatus.ON_HOLD: {PayoutStatus.PENDING, PayoutStatus.REVERSED},
    PayoutStatus.COMPLETED: {PayoutStatus.REVERSED},
    PayoutStatus.REVERSED: set(),
}

INITIAL_STATES = {PayoutStatus.PENDING, PayoutStatus.ON_HOLD}
REVERSIBLE_STATES = {PayoutStatus.COMPLETED, PayoutStatus.ON_HOLD}


def can_transition(current: PayoutStatus, target: PayoutStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def transition(payout: Payout, target: PayoutStatus) -> Payout:
    """
    Move `payout` to `target` in place.

    Anything outside ALLOWED_TRANSITIONS is a programming fault: it is logged
    at CRITICAL and raised, never retried.
    """
    current = payout.status
    if not can_transition(current, target):
        logger.critical(
            "PAYOUT_ILLEGAL_TRANSITION payout=%s from=%s to=%s",
            payout.id,
            current.value,
            target.value,
        )
        raise IllegalTransition("payout", payout.id, current.value, target.value)

    payout.status = target
    logger.info("PAYOUT_TRANSITION payout=%s from=%s to=%s", payout.id, current.value, target.value)
    return payout
