from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from settlement import Settlement, get_settlement
from utils.errors import RemittanceNotFound
from utils.security import require_admin

router = APIRouter(
    prefix="/api/settlement/cod",
    tags=["COD"],
    dependencies=[Depends(require_admin)],
)


class RemittanceCreate(BaseModel):
    order_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0)
    logistics_partner: str = Field(..., min_length=1)
    awb_number: Optional[str] = None


class OrderOutcome(BaseModel):
    delivered: bool
    returned: bool = False


# ----------------------------------------
# AVAILABILITY
# ----------------------------------------

@router.get("/availability")
async def cod_availability(
    pincode: str,
    order_value: int = Query(..., ge=0),
    customer_id: str = Query(..., min_length=1),
    settlement: Settlement = Depends(get_settlement),
):
    return await settlement.cod.validate_cod_availability(pincode, order_value, customer_id)


# ----------------------------------------
# REMITTANCES
# ----------------------------------------

@router.post("/remittances")
async def record_remittance(data: RemittanceCreate, settlement: Settlement = Depends(get_settlement)):
    return await settlement.cod.record_remittance(
        data.order_id,
        data.vendor_id,
        data.amount,
        data.logistics_partner,
        data.awb_number,
    )


@router.get("/remittances/{remittance_id}")
async def get_remittance(remittance_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.cod.get_remittance(remittance_id)


@router.post("/remittances/{remittance_id}/complete")
async def complete_remittance(remittance_id: str, settlement: Settlement = Depends(get_settlement)):
    remittance = await settlement.cod.mark_remittance_completed(remittance_id)
    if remittance is None:
        raise RemittanceNotFound(f"Remittance {remittance_id} not found")
    return remittance


@router.get("/statistics")
async def cod_statistics(
    vendor_id: Optional[str] = None,
    settlement: Settlement = Depends(get_settlement),
):
    return await settlement.cod.get_cod_statistics(vendor_id)


# ----------------------------------------
# CUSTOMER RISK
# ----------------------------------------

@router.get("/risk/{customer_id}")
async def customer_risk_profile(customer_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.scorer.get_profile(customer_id)


@router.post("/risk/{customer_id}/outcomes")
async def record_order_outcome(
    customer_id: str,
    data: OrderOutcome,
    settlement: Settlement = Depends(get_settlement),
):
    return await settlement.scorer.record_order_outcome(customer_id, data.delivered, data.returned)
