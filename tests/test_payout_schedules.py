import asyncio
from datetime import datetime, timedelta

import pytest

from models.payout import PayoutStatus
from models.payout_schedule import PayoutFrequency
from utils.errors import AccountNotFound, PayoutScheduleNotFound
from utils.payout_schedules import next_payout_date


class TestNextPayoutDate:
    @pytest.mark.parametrize("frequency,expected", [
        (PayoutFrequency.DAILY, datetime(2026, 1, 6, 9, 30)),
        (PayoutFrequency.WEEKLY, datetime(2026, 1, 12, 9, 30)),
        (PayoutFrequency.BIWEEKLY, datetime(2026, 1, 19, 9, 30)),
        (PayoutFrequency.MONTHLY, datetime(2026, 2, 5, 9, 30)),
    ])
    def test_one_period_ahead(self, frequency, expected):
        assert next_payout_date(frequency, datetime(2026, 1, 5, 9, 30)) == expected

    def test_monthly_clamps_to_month_end(self):
        assert next_payout_date(PayoutFrequency.MONTHLY, datetime(2026, 1, 31)) == datetime(2026, 2, 28)

    def test_monthly_rolls_over_year(self):
        assert next_payout_date(PayoutFrequency.MONTHLY, datetime(2026, 12, 15)) == datetime(2027, 1, 15)


async def _manual_vendor(verified_vendor, vendor_id="vendor_1"):
    return await verified_vendor(vendor_id, auto_payout_enabled=False)


class TestScheduleLifecycle:
    def test_defaults(self, settlement, clock, verified_vendor):
        async def scenario():
            await _manual_vendor(verified_vendor)
            return await settlement.schedules.set_schedule("vendor_1", PayoutFrequency.WEEKLY)

        schedule = asyncio.run(scenario())
        assert schedule.minimum_payout_amount == 100000
        assert schedule.next_payout_date == clock() + timedelta(days=7)
        assert schedule.active is True

    def test_unknown_vendor(self, settlement):
        with pytest.raises(AccountNotFound):
            asyncio.run(settlement.schedules.set_schedule("ghost", PayoutFrequency.DAILY))

    def test_replacing_keeps_created_at(self, settlement, clock, verified_vendor):
        async def scenario():
            await _manual_vendor(verified_vendor)
            first = await settlement.schedules.set_schedule("vendor_1", PayoutFrequency.WEEKLY)
            clock.advance(days=2)
            second = await settlement.schedules.set_schedule("vendor_1", PayoutFrequency.DAILY, minimum_payout_amount=0)
            return first, second

        first, second = asyncio.run(scenario())
        assert second.created_at == first.created_at
        assert second.frequency == PayoutFrequency.DAILY
        assert second.minimum_payout_amount == 0

    def test_missing_schedule(self, settlement):
        with pytest.raises(PayoutScheduleNotFound):
            asyncio.run(settlement.schedules.get_schedule("vendor_1"))


class TestScheduledRuns:
    def test_not_due_yet(self, settlement, gateway, verified_vendor):
        async def scenario():
            await _manual_vendor(verified_vendor)
            await settlement.orchestrator.create_payout("vendor_1", 200000, order_id="o1")
            await settlement.schedules.set_schedule("vendor_1", PayoutFrequency.DAILY)
            return await settlement.run_scheduled_payouts()

        summary = asyncio.run(scenario())
        assert summary["vendors"] == 0
        assert gateway.transfer_calls == []

    def test_due_run_sweeps_pending_payouts(self, settlement, gateway, clock, verified_vendor):
        async def scenario():
            await _manual_vendor(verified_vendor)
            first = await settlement.orchestrator.create_payout("vendor_1", 60000, order_id="o1")
            second = await settlement.orchestrator.create_payout("vendor_1", 60000, order_id="o2")
            await settlement.schedules.set_schedule("vendor_1", PayoutFrequency.DAILY)
            start = clock()
            clock.advance(days=1)
            summary = await settlement.run_scheduled_payouts()
            payouts = [await settlement.orchestrator.get_payout(p.id) for p in (first, second)]
            return start, summary, payouts, await settlement.schedules.get_schedule("vendor_1")

        start, summary, payouts, schedule = asyncio.run(scenario())
        assert summary == {"vendors": 1, "initiated": 2, "below_minimum": 0, "errors": 0}
        assert [p.status for p in payouts] == [PayoutStatus.PROCESSING, PayoutStatus.PROCESSING]
        assert len(gateway.transfer_calls) == 2
        assert schedule.next_payout_date == start + timedelta(days=2)
        assert schedule.last_run_at == start + timedelta(days=1)

    def test_below_minimum_waits(self, settlement, gateway, clock, verified_vendor):
        async def scenario():
            await _manual_vendor(verified_vendor)
            payout = await settlement.orchestrator.create_payout("vendor_1", 60000, order_id="o1")
            await settlement.schedules.set_schedule("vendor_1", PayoutFrequency.DAILY)
            clock.advance(days=1)
            summary = await settlement.run_scheduled_payouts()
            return summary, await settlement.orchestrator.get_payout(payout.id)

        summary, payout = asyncio.run(scenario())
        assert summary["below_minimum"] == 1
        assert payout.status == PayoutStatus.PENDING
        assert gateway.transfer_calls == []

    def test_same_due_date_runs_once(self, settlement, gateway, clock, verified_vendor):
        async def scenario():
            await _manual_vendor(verified_vendor)
            await settlement.orchestrator.create_payout("vendor_1", 200000, order_id="o1")
            await settlement.schedules.set_schedule("vendor_1", PayoutFrequency.DAILY)
            clock.advance(days=1)
            return await asyncio.gather(
                settlement.run_scheduled_payouts(),
                settlement.run_scheduled_payouts(),
            )

        first, second = asyncio.run(scenario())
        assert first["vendors"] + second["vendors"] == 1
        assert len(gateway.transfer_calls) == 1

    def test_blocked_payouts_are_left_alone(self, settlement, gateway, clock, verified_vendor):
        async def scenario():
            await _manual_vendor(verified_vendor)
            blocked = await settlement.orchestrator.create_payout("vendor_1", 60000, order_id="o1")
            await settlement.orchestrator.block_retries(blocked, "refunded")
            await settlement.orchestrator.create_payout("vendor_1", 60000, order_id="o2")
            await settlement.schedules.set_schedule("vendor_1", PayoutFrequency.DAILY, minimum_payout_amount=0)
            clock.advance(days=1)
            summary = await settlement.run_scheduled_payouts()
            return summary, await settlement.orchestrator.get_payout(blocked.id)

        summary, blocked = asyncio.run(scenario())
        assert summary["initiated"] == 1
        assert blocked.status == PayoutStatus.PENDING
        assert len(gateway.transfer_calls) == 1

    def test_deactivated_schedule_is_skipped(self, settlement, gateway, clock, verified_vendor):
        async def scenario():
            await _manual_vendor(verified_vendor)
            await settlement.orchestrator.create_payout("vendor_1", 200000, order_id="o1")
            await settlement.schedules.set_schedule("vendor_1", PayoutFrequency.DAILY)
            await settlement.schedules.deactivate_schedule("vendor_1", actor_id="ops_1")
            clock.advance(days=3)
            return await settlement.run_scheduled_payouts()

        assert asyncio.run(scenario())["vendors"] == 0
        assert gateway.transfer_calls == []

    def test_suspended_vendor_is_an_error(self, settlement, gateway, clock, verified_vendor):
        async def scenario():
            await _manual_vendor(verified_vendor)
            await settlement.orchestrator.create_payout("vendor_1", 200000, order_id="o1")
            await settlement.schedules.set_schedule("vendor_1", PayoutFrequency.DAILY)
            await settlement.accounts.suspend("vendor_1", "ops_1", "fraud review")
            clock.advance(days=1)
            return await settlement.run_scheduled_payouts()

        summary = asyncio.run(scenario())
        assert summary["errors"] == 1
        assert gateway.transfer_calls == []

    def test_missed_periods_are_skipped(self, settlement, clock, verified_vendor):
        async def scenario():
            await _manual_vendor(verified_vendor)
            await settlement.schedules.set_schedule("vendor_1", PayoutFrequency.DAILY)
            start = clock()
            clock.advance(days=10)
            await settlement.run_scheduled_payouts()
            return start, await settlement.schedules.get_schedule("vendor_1")

        start, schedule = asyncio.run(scenario())
        assert schedule.next_payout_date == start + timedelta(days=11)
