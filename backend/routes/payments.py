from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from models.payment import PaymentMethod
from settlement import Settlement, get_settlement
from utils.security import require_admin

router = APIRouter(
    prefix="/api/settlement/payments",
    tags=["Payments"],
    dependencies=[Depends(require_admin)],
)


# ======================================================
# SCHEMAS
# ======================================================

class OrderRegister(BaseModel):
    order_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0)
    customer_id: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.PREPAID
    collectible_amount: Optional[int] = Field(None, ge=0)
    hold_until_delivery: bool = False
    waybill: Optional[str] = None


class WaybillAttach(BaseModel):
    waybill: str = Field(..., min_length=1)


class CheckoutCreate(BaseModel):
    order_id: str = Field(..., min_length=1)
    vendor_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)
    customer_id: Optional[str] = None
    hold_until_delivery: bool = False


class CheckoutVerify(BaseModel):
    gateway_order_id: str
    payment_id: str
    signature: str


class PaymentCapture(BaseModel):
    amount: int = Field(..., gt=0)


# ----------------------------------------
# ORDERS
# ----------------------------------------

@router.post("/orders")
async def register_order(data: OrderRegister, settlement: Settlement = Depends(get_settlement)):
    return await settlement.payments.register_order(
        data.order_id,
        data.vendor_id,
        data.amount,
        customer_id=data.customer_id,
        payment_method=data.payment_method,
        collectible_amount=data.collectible_amount,
        hold_until_delivery=data.hold_until_delivery,
        waybill=data.waybill,
    )


@router.get("/orders/{order_id}")
async def get_order(order_id: str, settlement: Settlement = Depends(get_settlement)):
    return await settlement.payments.get_order(order_id)


@router.post("/orders/{order_id}/waybill")
async def attach_waybill(order_id: str, data: WaybillAttach, settlement: Settlement = Depends(get_settlement)):
    return await settlement.payments.attach_waybill(order_id, data.waybill)


# ----------------------------------------
# CHECKOUT
# ----------------------------------------

@router.post("/checkout")
async def create_checkout(data: CheckoutCreate, settlement: Settlement = Depends(get_settlement)):
    return await settlement.payments.create_checkout_order(
        data.order_id,
        data.amount,
        data.vendor_id,
        customer_id=data.customer_id,
        hold_until_delivery=data.hold_until_delivery,
    )


@router.post("/checkout/verify")
async def verify_checkout(data: CheckoutVerify, settlement: Settlement = Depends(get_settlement)):
    payment = await settlement.payments.verify_checkout(data.gateway_order_id, data.payment_id, data.signature)
    return {"verified": True, "payment": payment}


@router.post("/{payment_id}/capture")
async def capture_payment(payment_id: str, data: PaymentCapture, settlement: Settlement = Depends(get_settlement)):
    return await settlement.payments.capture_payment(payment_id, data.amount)
