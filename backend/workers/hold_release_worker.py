import asyncio
import logging

from config.env import HOLD_RELEASE_SCAN_INTERVAL_SECONDS
from settlement import Settlement

logger = logging.getLogger(__name__)


async def release_held_payouts(settlement: Settlement) -> list:
    released = await settlement.release_expired_holds()
    if released:
        logger.info("HOLD_RELEASE_PASS released=%s", len(released))
    return released


async def hold_release_worker(settlement: Settlement, interval: int = HOLD_RELEASE_SCAN_INTERVAL_SECONDS):
    while True:
        try:
            await release_held_payouts(settlement)
        except Exception:
            logger.exception("HOLD_RELEASE_WORKER_FAILED")

        await asyncio.sleep(interval)
