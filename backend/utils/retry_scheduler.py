import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from config.constants import RETRY_BASE_MINUTES, TRANSFER_LOCK_SECONDS
from models.alert import AlertKind, VendorNotificationKind
from models.payout import Payout, PayoutStatus
from utils.errors import GatewayError, SettlementError
from utils.notifications import Notifier
from utils.repositories import PayoutRepository, RetryQueueRepository

logger = logging.getLogger(__name__)


def backoff_delay(retry_count: int) -> timedelta:
    return timedelta(minutes=RETRY_BASE_MINUTES ** retry_count)


class RetryScheduler:
    """
    Failed-payout retry queue.

    A failed payout with budget left is queued together with a backoff
    marker whose TTL equals the delay; it becomes due when the marker is gone.
    A payout whose retry_count reached max_retries is escalated to the admin
    queue exactly once and never retried again.
    """

    def __init__(
        self,
        payouts: PayoutRepository,
        queue: RetryQueueRepository,
        notifier: Notifier,
        clock=datetime.utcnow,
    ):
        self.payouts = payouts
        self.queue = queue
        self.notifier = notifier
        self._clock = clock

    async def schedule_retry(self, payout: Payout) -> Payout:
        if payout.retry_blocked_reason:
            await self.queue.remove(payout.id)
            logger.warning("PAYOUT_RETRY_REFUSED payout=%s reason=%s", payout.id, payout.retry_blocked_reason)
            return payout

        if payout.retry_count >= payout.max_retries:
            return await self.escalate(payout)

        delay = backoff_delay(payout.retry_count)
        payout.next_retry_at = self._clock() + delay
        payout.updated_at = self._clock()
        await self.payouts.save(payout)
        await self.queue.schedule(payout.id, int(delay.total_seconds()))

        logger.info(
            "PAYOUT_RETRY_SCHEDULED payout=%s retry_count=%s next_retry_at=%s",
            payout.id,
            payout.retry_count,
            payout.next_retry_at.isoformat(),
        )
        return payout

    async def escalate(self, payout: Payout) -> Payout:
        await self.queue.remove(payout.id)
        if payout.admin_notified:
            return payout

        await self.notifier.alert_admin(
            AlertKind.PAYOUT_RETRIES_EXHAUSTED,
            payout.id,
            f"Payout failed after {payout.retry_count} retries",
            vendor_id=payout.vendor_id,
            details={
                "order_id": payout.order_id,
                "amount": payout.net_payout,
                "retry_count": payout.retry_count,
                "error": payout.error_message,
                "error_details": payout.error_details.model_dump() if payout.error_details else None,
            },
        )
        await self.notifier.notify_vendor(payout, VendorNotificationKind.PAYOUT_FAILED)
        payout.admin_notified = True
        payout.next_retry_at = None
        payout.updated_at = self._clock()
        await self.payouts.save(payout)
        return payout

    async def clear(self, payout_id: str) -> None:
        await self.queue.remove(payout_id)

    async def is_due(self, payout: Payout) -> bool:
        if not await self.queue.backing_off(payout.id):
            return True
        return payout.next_retry_at is not None and payout.next_retry_at <= self._clock()

    async def process_due_retries(self, retry: Callable[[str], Awaitable[Payout]]) -> dict:
        """
        Scan the queue once and hand every due payout to `retry`.

        Each (payout, attempt) pair is claimed in the store first, so two
        concurrent scans never retry the same attempt twice.
        """
        summary = {"retried": 0, "escalated": 0, "waiting": 0, "dropped": 0, "errors": 0}

        for payout_id in sorted(await self.queue.queued()):
            payout = await self.payouts.get(payout_id)
            if not payout or payout.status != PayoutStatus.FAILED or payout.retry_blocked_reason:
                await self.queue.remove(payout_id)
                summary["dropped"] += 1
                continue

            if payout.retry_count >= payout.max_retries:
                await self.escalate(payout)
                summary["escalated"] += 1
                continue

            if not await self.is_due(payout):
                summary["waiting"] += 1
                continue

            if not await self.queue.claim(payout.id, payout.retry_count + 1, TRANSFER_LOCK_SECONDS):
                continue

            await self.queue.remove(payout.id)
            try:
                await retry(payout.id)
                summary["retried"] += 1
            except (SettlementError, GatewayError) as e:
                summary["errors"] += 1
                logger.warning("PAYOUT_RETRY_SKIPPED payout=%s error=%s", payout.id, e)
                # still failed: keep it queued for the next window
                current = await self.payouts.get(payout.id)
                if current and current.status == PayoutStatus.FAILED and not current.retry_blocked_reason:
                    await self.queue.schedule(payout.id, int(backoff_delay(current.retry_count).total_seconds()))

        return summary
