from typing import Optional

from models.alert import AdminAlert, AlertKind
from models.payout import Payout, PayoutStatus, PayoutSummary
from utils.repositories import AdminAlertRepository, PayoutRepository

PENDING_LIKE = {PayoutStatus.PENDING, PayoutStatus.PROCESSING, PayoutStatus.ON_HOLD}


class PayoutReports:
    """Read side of payouts: listings, summaries and the escalation queue."""

    def __init__(self, payouts: PayoutRepository, alerts: AdminAlertRepository):
        self.payouts = payouts
        self.alerts = alerts

    async def list_vendor_payouts(self, vendor_id: str, *, limit: Optional[int] = None) -> list[Payout]:
        payouts = sorted(await self.payouts.find_by_vendor(vendor_id), key=lambda p: p.created_at, reverse=True)
        return payouts[:limit] if limit else payouts

    async def get_payouts_by_status(self, vendor_id: str, status: PayoutStatus) -> list[Payout]:
        return [p for p in await self.payouts.find_by_vendor(vendor_id) if p.status == status]

    async def get_order_payouts(self, order_id: str) -> list[Payout]:
        return await self.payouts.find_by_order(order_id)

    async def get_payout_summary(self, vendor_id: str) -> PayoutSummary:
        summary = PayoutSummary(vendor_id=vendor_id)

        for payout in await self.payouts.find_by_vendor(vendor_id):
            summary.total_payouts += 1

            if payout.status == PayoutStatus.REVERSED:
                summary.reversed_amount += payout.net_payout
                summary.reversed_count += 1
                continue

            summary.total_commission += payout.commission_amount
            summary.total_tax += payout.tax_amount

            if payout.status in PENDING_LIKE:
                summary.pending_amount += payout.net_payout
                summary.pending_count += 1
            elif payout.status == PayoutStatus.COMPLETED:
                summary.completed_amount += payout.net_payout
                summary.completed_count += 1
            elif payout.status == PayoutStatus.FAILED:
                summary.failed_amount += payout.net_payout
                summary.failed_count += 1

        return summary

    async def escalations(self) -> list[AdminAlert]:
        return await self.alerts.list(AlertKind.PAYOUT_RETRIES_EXHAUSTED.value)

    async def admin_alerts(self, kind: Optional[AlertKind] = None) -> list[AdminAlert]:
        return await self.alerts.list(kind.value if kind else None)
