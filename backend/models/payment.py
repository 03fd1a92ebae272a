from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class PaymentMethod(str, Enum):
    PREPAID = "prepaid"
    COD = "cod"


class OrderPaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    COD_PENDING = "cod_pending"


class OrderRecord(BaseModel):
    order_id: str
    vendor_id: str
    customer_id: Optional[str] = None
    amount: int = Field(..., ge=0)
    # COD: what the courier must collect at the door
    collectible_amount: Optional[int] = Field(None, ge=0)
    payment_method: PaymentMethod = PaymentMethod.PREPAID
    payment_status: OrderPaymentStatus = OrderPaymentStatus.PENDING
    gateway_order_id: Optional[str] = None
    payment_id: Optional[str] = None
    hold_until_delivery: bool = False
    waybill: Optional[str] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def expected_collectible(self) -> int:
        if self.collectible_amount is not None:
            return self.collectible_amount
        return self.amount

    def to_doc(self) -> dict:
        return self.model_dump(mode="json")


class PaymentStatus(str, Enum):
    CREATED = "created"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentRecord(BaseModel):
    payment_id: str
    order_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    vendor_id: Optional[str] = None
    amount: int = Field(0, ge=0)
    status: PaymentStatus = PaymentStatus.CREATED
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    refund_id: Optional[str] = None
    refunded_amount: int = 0
    notes: dict[str, Any] = Field(default_factory=dict)
    captured_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    def to_doc(self) -> dict:
        return self.model_dump(mode="json")
