import asyncio
from datetime import timedelta

import pytest

from models.alert import AlertKind, VendorNotificationKind
from models.payout import PayoutStatus
from utils.errors import PayoutStateError, RetryBudgetExhausted
from utils.retry_scheduler import backoff_delay


class TestBackoff:
    @pytest.mark.parametrize("retry_count,minutes", [(0, 1), (1, 2), (2, 4), (3, 8), (4, 16), (5, 32)])
    def test_exponential(self, retry_count, minutes):
        assert backoff_delay(retry_count) == timedelta(minutes=minutes)


class TestDueRetries:
    def test_not_retried_before_backoff(self, settlement, gateway, clock, verified_vendor):
        gateway.fail_next_transfers(1)

        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.orchestrator.create_payout("vendor_1", 1000, order_id="o1")
            clock.advance(seconds=30)
            return await settlement.run_due_retries()

        summary = asyncio.run(scenario())
        assert summary["waiting"] == 1
        assert summary["retried"] == 0
        assert len(gateway.transfer_calls) == 1

    def test_retry_after_backoff_succeeds(self, settlement, gateway, clock, verified_vendor):
        gateway.fail_next_transfers(1)

        async def scenario():
            await verified_vendor("vendor_1")
            payout = await settlement.orchestrator.create_payout("vendor_1", 1000, order_id="o1")
            clock.advance(minutes=1, seconds=1)
            summary = await settlement.run_due_retries()
            queued = await settlement.scheduler.queue.queued()
            return summary, await settlement.orchestrator.get_payout(payout.id), queued

        summary, payout, queued = asyncio.run(scenario())
        assert summary["retried"] == 1
        assert payout.status == PayoutStatus.PROCESSING
        assert payout.retry_count == 1
        assert payout.error_details is None
        assert queued == set()
        assert len(gateway.transfer_calls) == 2

    def test_exhausted_payout_escalates_exactly_once(self, settlement, gateway, clock, verified_vendor):
        gateway.fail_next_transfers(20)

        async def scenario():
            await verified_vendor("vendor_1")
            payout = await settlement.orchestrator.create_payout("vendor_1", 1000, order_id="o1")
            for _ in range(8):
                clock.advance(hours=1)
                await settlement.run_due_retries()
            return (
                await settlement.orchestrator.get_payout(payout.id),
                await settlement.reports.escalations(),
                await settlement.notifier.vendor_notifications.list_for_vendor("vendor_1"),
            )

        payout, escalations, notifications = asyncio.run(scenario())
        assert payout.status == PayoutStatus.FAILED
        assert payout.retry_count == 5
        assert payout.admin_notified is True
        assert payout.next_retry_at is None
        # one initial attempt plus five retries
        assert len(gateway.transfer_calls) == 6
        assert [a.entity_id for a in escalations] == [payout.id]
        assert escalations[0].kind == AlertKind.PAYOUT_RETRIES_EXHAUSTED
        assert [n.kind for n in notifications] == [VendorNotificationKind.PAYOUT_FAILED]

    def test_skipped_retry_stays_queued(self, settlement, gateway, clock, verified_vendor):
        gateway.fail_next_transfers(1)

        async def scenario():
            await verified_vendor("vendor_1")
            payout = await settlement.orchestrator.create_payout("vendor_1", 1000, order_id="o1")
            await settlement.accounts.suspend("vendor_1", "ops_1", "kyc expired")
            clock.advance(minutes=2)
            summary = await settlement.run_due_retries()
            return (
                summary,
                await settlement.orchestrator.get_payout(payout.id),
                await settlement.scheduler.queue.queued(),
            )

        summary, payout, queued = asyncio.run(scenario())
        assert summary["errors"] == 1
        assert payout.status == PayoutStatus.FAILED
        assert payout.retry_count == 0
        assert queued == {payout.id}
        assert len(gateway.transfer_calls) == 1

    def test_stale_entry_dropped_from_queue(self, settlement, gateway, verified_vendor):
        gateway.fail_next_transfers(1)

        async def scenario():
            await verified_vendor("vendor_1")
            payout = await settlement.orchestrator.create_payout("vendor_1", 1000, order_id="o1")
            await settlement.orchestrator.retry_payout(payout.id)
            # stale queue entry for a payout that already went through
            await settlement.scheduler.queue.schedule(payout.id, 60)
            return await settlement.run_due_retries()

        summary = asyncio.run(scenario())
        assert summary["dropped"] == 1

    def test_blocked_payout_dropped_from_queue(self, settlement, gateway, clock, verified_vendor):
        gateway.fail_next_transfers(1)

        async def scenario():
            await verified_vendor("vendor_1")
            payout = await settlement.orchestrator.create_payout("vendor_1", 1000, order_id="o1")
            await settlement.orchestrator.block_retries(payout, "settled_at_gateway")
            # a queue entry written before the block landed
            await settlement.scheduler.queue.schedule(payout.id, 1)
            clock.advance(minutes=5)
            return await settlement.run_due_retries(), await settlement.scheduler.queue.queued()

        summary, queued = asyncio.run(scenario())
        assert summary["dropped"] == 1
        assert summary["retried"] == 0
        assert queued == set()
        assert len(gateway.transfer_calls) == 1

    def test_schedule_retry_refuses_blocked_payout(self, settlement, gateway, verified_vendor):
        gateway.fail_next_transfers(1)

        async def scenario():
            await verified_vendor("vendor_1")
            payout = await settlement.orchestrator.create_payout("vendor_1", 1000, order_id="o1")
            payout = await settlement.orchestrator.block_retries(payout, "refunded")
            await settlement.scheduler.schedule_retry(payout)
            return await settlement.orchestrator.get_payout(payout.id), await settlement.scheduler.queue.queued()

        payout, queued = asyncio.run(scenario())
        assert payout.next_retry_at is None
        assert payout.admin_notified is False
        assert queued == set()


class TestManualRetry:
    def test_only_failed_payouts(self, settlement, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            payout = await settlement.orchestrator.create_payout("vendor_1", 1000, order_id="o1")
            await settlement.orchestrator.retry_payout(payout.id)

        with pytest.raises(PayoutStateError):
            asyncio.run(scenario())

    def test_budget_exhausted(self, settlement, gateway, verified_vendor):
        gateway.fail_next_transfers(20)

        async def scenario():
            await verified_vendor("vendor_1")
            payout = await settlement.orchestrator.create_payout("vendor_1", 1000, order_id="o1")
            for _ in range(5):
                await settlement.orchestrator.retry_payout(payout.id)
            await settlement.orchestrator.retry_payout(payout.id)

        with pytest.raises(RetryBudgetExhausted):
            asyncio.run(scenario())
        assert len(gateway.transfer_calls) == 6
