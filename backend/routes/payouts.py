from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from models.alert import AlertKind
from models.payout import PayoutStatus, PayoutType, ReleaseTrigger
from settlement import Settlement, get_settlement
from utils.security import require_admin

router = APIRouter(
    prefix="/api/settlement/payouts",
    tags=["Payouts"],
    dependencies=[Depends(require_admin)],
)


# ======================================================
# SCHEMAS
# ======================================================

class PayoutCreate(BaseModel):
    vendor_id: str = Field(..., min_length=1)
    gross_amount: int = Field(..., ge=0)
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    remittance_id: Optional[str] = None
    payout_type: PayoutType = PayoutType.ORDER
    hold_until: Optional[datetime] = None
    metadata: Optional[dict] = None


class PayoutRelease(BaseModel):
    actor_id: Optional[str] = None


class PayoutReverse(BaseModel):
    reason: str = Field(..., min_length=1)
    actor_id: Optional[str] = None


# ----------------------------------------
# CREATE / READ
# ----------------------------------------

@router.post("")
async def create_payout(data: PayoutCreate, settlement: Settlement = Depends(get_settlement)):
    payout = await settlement.orchestrator.create_payout(
        data.vendor_id,
        data.gross_amount,
        order_id=data.order_id,
        payment_id=data.payment_id,
        remittance_id=data.remittance_id,
        payout_type=data.payout_type,
        hold_until=data.hold_until,
        metadata=data.metadata,
    )
    return payout


@router.get("/escalations")
async def list_escalations(settlement: Settlement = Depends(get_settlement)):
    return await settlement.reports.escalations()


@router.get("/alerts")
async def list_admin_alerts(
    kind: Optional[AlertKind] = None,
    settlement: Settlement = Depends(get_settlement),
):
    return await settlement.reports.admin_alerts(kind)


@router.post("/run-due-retries")
async def run_due_retries(settlement: Settlement = Depends(get_settlement)):
    return await settlement.run_due_retries()


@router.post("/release-expired-holds")
async def release_expired_holds(settlement: Settlement = Depends(get_settlement)):
    released = await settlement.release_expired_holds()
    return {"released": [p.id for p in released]}


@router.post("/run-scheduled")
async def run_scheduled_payouts(settlement: Settlement = Depends(get_settlement)):
    return await settlement.run_scheduled_payouts()


@router.get("/schedules")
async def list_payout_schedules(settlement: Settlement = Depends(get_settlement)):
    return await settlement.schedules.list_schedules()


@router.get("/vendor/{vendor_id}")
async def list_vendor_payouts(
    vendor_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    settlement: Settlement = Depends(get_settlement),
):
    return await settlement.reports.list_vendor_payouts(vendor_id, limit=limit)


@router.get("/vendor/{vendor_id}/summary")
async def vendor_payout_summary(vendor_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.reports.get_payout_summary(vendor_id)


@router.get("/vendor/{vendor_id}/status/{status}")
async def vendor_payouts_by_status(
    vendor_id: str,
    status: PayoutStatus,
    settlement: Settlement = Depends(get_settlement),
):
    return await settlement.reports.get_payouts_by_status(vendor_id, status)


@router.get("/order/{order_id}")
async def order_payouts(order_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.reports.get_order_payouts(order_id)


@router.get("/{payout_id}")
async def get_payout(payout_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.orchestrator.get_payout(payout_id)


# ----------------------------------------
# MONEY MOVEMENT
# ----------------------------------------

@router.post("/{payout_id}/initiate")
async def initiate_payout(payout_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.orchestrator.initiate_transfer(payout_id)


@router.post("/{payout_id}/retry")
async def retry_payout(payout_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.orchestrator.retry_payout(payout_id)


@router.post("/{payout_id}/release")
async def release_payout(
    payout_id: str,
    data: PayoutRelease,
    settlement: Settlement = Depends(get_settlement),
):
    return await settlement.orchestrator.release_payout(
        payout_id,
        ReleaseTrigger.MANUAL,
        actor_id=data.actor_id,
    )


@router.post("/{payout_id}/reverse")
async def reverse_payout(
    payout_id: str,
    data: PayoutReverse,
    settlement: Settlement = Depends(get_settlement),
):
    return await settlement.orchestrator.reverse_payout(payout_id, data.reason, actor_id=data.actor_id)


@router.post("/{payout_id}/reconcile")
async def reconcile_payout(payout_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.reconciler.reconcile_transfer(payout_id)
