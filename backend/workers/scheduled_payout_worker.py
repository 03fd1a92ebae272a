import asyncio
import logging

from config.env import SCHEDULED_PAYOUT_SCAN_INTERVAL_SECONDS
from settlement import Settlement

logger = logging.getLogger(__name__)


async def run_scheduled_payouts(settlement: Settlement) -> dict:
    summary = await settlement.run_scheduled_payouts()
    if summary["vendors"]:
        logger.info(
            "PAYOUT_SCHEDULE_PASS vendors=%s initiated=%s below_minimum=%s errors=%s",
            summary["vendors"],
            summary["initiated"],
            summary["below_minimum"],
            summary["errors"],
        )
    return summary


async def scheduled_payout_worker(settlement: Settlement, interval: int = SCHEDULED_PAYOUT_SCAN_INTERVAL_SECONDS):
    """Sweep pending payouts for vendors whose payout date has come."""
    while True:
        try:
            await run_scheduled_payouts(settlement)
        except Exception:
            logger.exception("PAYOUT_SCHEDULE_WORKER_FAILED")

        await asyncio.sleep(interval)
