from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from models.payout_schedule import PayoutFrequency
from models.vendor_account import VendorAccountStatus
from settlement import Settlement, get_settlement
from utils.security import require_admin

router = APIRouter(
    prefix="/api/settlement/accounts",
    tags=["Vendor Accounts"],
    dependencies=[Depends(require_admin)],
)


# ======================================================
# SCHEMAS
# ======================================================

class AccountOnboard(BaseModel):
    vendor_id: str = Field(..., min_length=1)
    destination_account_id: str = Field(..., min_length=1)
    commission_percentage: Optional[Decimal] = None
    auto_payout_enabled: bool = True
    tax_id: Optional[str] = None
    withholding_applicable: bool = True
    business_name: Optional[str] = None
    contact_email: Optional[str] = None


class OperatorAction(BaseModel):
    operator_id: str = Field(..., min_length=1)
    notes: Optional[str] = None


class OperatorReason(BaseModel):
    operator_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)


class CommissionUpdate(BaseModel):
    operator_id: str = Field(..., min_length=1)
    commission_percentage: Decimal


class AutoPayoutUpdate(BaseModel):
    operator_id: str = Field(..., min_length=1)
    enabled: bool


class ScheduleUpdate(BaseModel):
    frequency: PayoutFrequency
    minimum_payout_amount: Optional[int] = Field(None, ge=0)
    operator_id: Optional[str] = None


# ----------------------------------------
# ONBOARDING / READ
# ----------------------------------------

@router.post("")
async def onboard_account(data: AccountOnboard, settlement: Settlement = Depends(get_settlement)):
    return await settlement.accounts.onboard(
        data.vendor_id,
        data.destination_account_id,
        commission_percentage=data.commission_percentage,
        auto_payout_enabled=data.auto_payout_enabled,
        tax_id=data.tax_id,
        withholding_applicable=data.withholding_applicable,
        business_name=data.business_name,
        contact_email=data.contact_email,
    )


@router.get("")
async def list_accounts(
    status: Optional[VendorAccountStatus] = None,
    settlement: Settlement = Depends(get_settlement),
):
    return await settlement.accounts.list_accounts(status)


@router.get("/{vendor_id}")
async def get_account(vendor_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.accounts.get(vendor_id)


@router.get("/{vendor_id}/history")
async def account_history(vendor_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.accounts.history(vendor_id)


# ----------------------------------------
# LIFECYCLE
# ----------------------------------------

@router.post("/{vendor_id}/submit")
async def submit_for_review(vendor_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.accounts.submit_for_review(vendor_id)


@router.post("/{vendor_id}/approve")
async def approve_account(vendor_id: str, data: OperatorAction, settlement: Settlement = Depends(get_settlement)):
    return await settlement.accounts.approve(vendor_id, data.operator_id, data.notes)


@router.post("/{vendor_id}/reject")
async def reject_account(vendor_id: str, data: OperatorReason, settlement: Settlement = Depends(get_settlement)):
    return await settlement.accounts.reject(vendor_id, data.operator_id, data.reason)


@router.post("/{vendor_id}/suspend")
async def suspend_account(vendor_id: str, data: OperatorReason, settlement: Settlement = Depends(get_settlement)):
    return await settlement.accounts.suspend(vendor_id, data.operator_id, data.reason)


@router.post("/{vendor_id}/reinstate")
async def reinstate_account(vendor_id: str, data: OperatorAction, settlement: Settlement = Depends(get_settlement)):
    return await settlement.accounts.reinstate(vendor_id, data.operator_id)


@router.patch("/{vendor_id}/commission")
async def update_commission(vendor_id: str, data: CommissionUpdate, settlement: Settlement = Depends(get_settlement)):
    return await settlement.accounts.update_commission(vendor_id, data.commission_percentage, data.operator_id)


@router.patch("/{vendor_id}/auto-payout")
async def set_auto_payout(vendor_id: str, data: AutoPayoutUpdate, settlement: Settlement = Depends(get_settlement)):
    return await settlement.accounts.set_auto_payout(vendor_id, data.enabled, data.operator_id)


# ----------------------------------------
# PAYOUT SCHEDULE
# ----------------------------------------

@router.put("/{vendor_id}/payout-schedule")
async def set_payout_schedule(vendor_id: str, data: ScheduleUpdate, settlement: Settlement = Depends(get_settlement)):
    return await settlement.schedules.set_schedule(
        vendor_id,
        data.frequency,
        minimum_payout_amount=data.minimum_payout_amount,
        actor_id=data.operator_id,
    )


@router.get("/{vendor_id}/payout-schedule")
async def get_payout_schedule(vendor_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.schedules.get_schedule(vendor_id)


@router.delete("/{vendor_id}/payout-schedule")
async def deactivate_payout_schedule(
    vendor_id: str,
    operator_id: Optional[str] = None,
    settlement: Settlement = Depends(get_settlement),
):
    return await settlement.schedules.deactivate_schedule(vendor_id, actor_id=operator_id)
