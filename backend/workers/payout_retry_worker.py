import asyncio
import logging

from config.env import RETRY_SCAN_INTERVAL_SECONDS
from settlement import Settlement

logger = logging.getLogger(__name__)


async def retry_due_payouts(settlement: Settlement) -> dict:
    summary = await settlement.run_due_retries()
    if summary["retried"] or summary["escalated"] or summary["errors"]:
        logger.info(
            "PAYOUT_RETRY_PASS retried=%s escalated=%s waiting=%s errors=%s",
            summary["retried"],
            summary["escalated"],
            summary["waiting"],
            summary["errors"],
        )
    return summary


async def payout_retry_worker(settlement: Settlement, interval: int = RETRY_SCAN_INTERVAL_SECONDS):
    """
    Re-attempt failed payouts whose backoff has elapsed.
    A failing pass is logged and the loop keeps going.
    """
    while True:
        try:
            await retry_due_payouts(settlement)
        except Exception:
            logger.exception("PAYOUT_RETRY_WORKER_FAILED")

        await asyncio.sleep(interval)
