"""
Vendor payout schedules.

A vendor without auto-payout accumulates pending payouts; a schedule sweeps
them to the gateway once per period when their total clears the vendor's
minimum.
"""
import calendar
import logging
from datetime import datetime, timedelta
from typing import Optional

from config.constants import DEFAULT_MIN_PAYOUT_AMOUNT, SCHEDULE_RUN_CLAIM_SECONDS
from models.payout import Payout, PayoutStatus
from models.payout_schedule import PayoutFrequency, PayoutSchedule
from utils.audit import AuditLog
from utils.errors import GatewayError, PayoutScheduleNotFound, PayoutStateError, SettlementError
from utils.repositories import PayoutRepository, PayoutScheduleRepository
from utils.transfers import TransferOrchestrator
from utils.vendor_accounts import VendorAccountService

logger = logging.getLogger(__name__)

_PERIOD_DAYS = {
    PayoutFrequency.DAILY: 1,
    PayoutFrequency.WEEKLY: 7,
    PayoutFrequency.BIWEEKLY: 14,
}


def next_payout_date(frequency: PayoutFrequency, from_date: datetime) -> datetime:
    if frequency in _PERIOD_DAYS:
        return from_date + timedelta(days=_PERIOD_DAYS[frequency])

    # monthly: same day next month, clamped to that month's last day
    year = from_date.year + from_date.month // 12
    month = from_date.month % 12 + 1
    day = min(from_date.day, calendar.monthrange(year, month)[1])
    return from_date.replace(year=year, month=month, day=day)


class PayoutScheduleService:
    def __init__(
        self,
        *,
        schedules: PayoutScheduleRepository,
        payouts: PayoutRepository,
        accounts: VendorAccountService,
        orchestrator: TransferOrchestrator,
        audit: AuditLog,
        clock=datetime.utcnow,
    ):
        self.schedules = schedules
        self.payouts = payouts
        self.accounts = accounts
        self.orchestrator = orchestrator
        self.audit = audit
        self._clock = clock

    async def set_schedule(
        self,
        vendor_id: str,
        frequency: PayoutFrequency,
        *,
        minimum_payout_amount: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> PayoutSchedule:
        """Create or replace a vendor's schedule; the first run is one period from now."""
        await self.accounts.get(vendor_id)

        now = self._clock()
        existing = await self.schedules.get(vendor_id)
        schedule = PayoutSchedule(
            vendor_id=vendor_id,
            frequency=frequency,
            next_payout_date=next_payout_date(frequency, now),
            minimum_payout_amount=(
                DEFAULT_MIN_PAYOUT_AMOUNT if minimum_payout_amount is None else minimum_payout_amount
            ),
            active=True,
            last_run_at=existing.last_run_at if existing else None,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        await self.schedules.save(schedule)

        await self.audit.log(actor_id or vendor_id, "admin" if actor_id else "vendor", "PAYOUT_SCHEDULE_SET", {
            "frequency": frequency.value,
            "minimum_payout_amount": schedule.minimum_payout_amount,
            "next_payout_date": schedule.next_payout_date.isoformat(),
        })
        logger.info(
            "PAYOUT_SCHEDULE_SET vendor=%s frequency=%s next=%s",
            vendor_id,
            frequency.value,
            schedule.next_payout_date.isoformat(),
        )
        return schedule

    async def get_schedule(self, vendor_id: str) -> PayoutSchedule:
        schedule = await self.schedules.get(vendor_id)
        if not schedule:
            raise PayoutScheduleNotFound(f"No payout schedule for vendor {vendor_id}")
        return schedule

    async def list_schedules(self) -> list[PayoutSchedule]:
        return await self.schedules.list_all()

    async def deactivate_schedule(self, vendor_id: str, *, actor_id: Optional[str] = None) -> PayoutSchedule:
        schedule = await self.get_schedule(vendor_id)
        schedule.active = False
        schedule.updated_at = self._clock()
        await self.schedules.save(schedule)
        await self.audit.log(actor_id or vendor_id, "admin" if actor_id else "vendor", "PAYOUT_SCHEDULE_DEACTIVATED", {})
        logger.info("PAYOUT_SCHEDULE_DEACTIVATED vendor=%s", vendor_id)
        return schedule

    # =====================================================
    # RUNS
    # =====================================================

    async def process_scheduled_payouts(self) -> dict:
        """
        Sweep every active schedule that is due.

        A due date is claimed in the store before anything moves, so two
        concurrent passes never pay a vendor twice for the same period.
        """
        now = self._clock()
        summary = {"vendors": 0, "initiated": 0, "below_minimum": 0, "errors": 0}

        for schedule in await self.schedules.list_all():
            if not schedule.active or schedule.next_payout_date > now:
                continue
            due = schedule.next_payout_date.isoformat()
            if not await self.schedules.claim_run(schedule.vendor_id, due, SCHEDULE_RUN_CLAIM_SECONDS):
                continue

            summary["vendors"] += 1
            try:
                initiated = await self._pay_vendor(schedule)
                if initiated is None:
                    summary["below_minimum"] += 1
                else:
                    summary["initiated"] += len(initiated)
            except (SettlementError, GatewayError) as e:
                summary["errors"] += 1
                logger.warning("PAYOUT_SCHEDULE_RUN_FAILED vendor=%s error=%s", schedule.vendor_id, e)

            # skip periods missed while no worker was running
            while schedule.next_payout_date <= now:
                schedule.next_payout_date = next_payout_date(schedule.frequency, schedule.next_payout_date)
            schedule.last_run_at = now
            schedule.updated_at = now
            await self.schedules.save(schedule)

        return summary

    async def _pay_vendor(self, schedule: PayoutSchedule) -> Optional[list[Payout]]:
        await self.accounts.require_verified(schedule.vendor_id)

        pending = [
            p for p in await self.payouts.find_by_vendor(schedule.vendor_id)
            if p.status == PayoutStatus.PENDING and not p.retry_blocked_reason
        ]
        total = sum(p.net_payout for p in pending)
        if total < schedule.minimum_payout_amount or not pending:
            logger.info(
                "PAYOUT_SCHEDULE_BELOW_MINIMUM vendor=%s pending=%s minimum=%s",
                schedule.vendor_id,
                total,
                schedule.minimum_payout_amount,
            )
            return None

        initiated = []
        for payout in pending:
            try:
                initiated.append(await self.orchestrator.initiate_transfer(payout.id))
            except PayoutStateError as e:
                logger.warning("PAYOUT_SCHEDULE_SKIPPED payout=%s error=%s", payout.id, e)

        logger.info(
            "PAYOUT_SCHEDULE_RUN vendor=%s initiated=%s total=%s",
            schedule.vendor_id,
            len(initiated),
            total,
        )
        return initiated
