from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ON_HOLD = "on_hold"
    REVERSED = "reversed"


class PayoutType(str, Enum):
    ORDER = "order"
    COD_REMITTANCE = "cod_remittance"
    ADJUSTMENT = "adjustment"


class ReleaseTrigger(str, Enum):
    DELIVERY_CONFIRMED = "delivery_confirmed"
    MANUAL = "manual"
    HOLD_EXPIRED = "hold_expired"


class PayoutErrorDetail(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    source: Optional[str] = None
    step: Optional[str] = None
    reason: Optional[str] = None


class Payout(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    id: str
    vendor_id: str
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    remittance_id: Optional[str] = None
    payout_type: PayoutType = PayoutType.ORDER

    # amounts in paise
    gross_amount: int = Field(..., ge=0, frozen=True)
    commission_percentage: Decimal
    commission_amount: int = Field(..., ge=0)
    tax_amount: int = Field(0, ge=0)
    net_payout: int = Field(..., ge=0)
    currency: str = "INR"

    # gateway side
    destination_account_id: Optional[str] = None
    transfer_reference: Optional[str] = None

    status: PayoutStatus = PayoutStatus.PENDING

    # retry mechanism
    retry_count: int = 0
    max_retries: int = 5
    next_retry_at: Optional[datetime] = None
    # set when money may already have moved; no automatic retry after this
    retry_blocked_reason: Optional[str] = None
    error_message: Optional[str] = None
    error_details: Optional[PayoutErrorDetail] = None

    # hold / reversal
    hold_until: Optional[datetime] = None
    release_trigger: Optional[ReleaseTrigger] = None
    released_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None
    reversed_at: Optional[datetime] = None

    initiated_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    vendor_notified: bool = False
    admin_notified: bool = False

    notes: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _amounts_balance(self):
        if self.gross_amount - self.commission_amount - self.tax_amount != self.net_payout:
            raise ValueError("net_payout must equal gross_amount - commission_amount - tax_amount")
        return self

    def to_doc(self) -> dict:
        return self.model_dump(mode="json")


class PayoutSummary(BaseModel):
    vendor_id: str
    total_payouts: int = 0
    pending_amount: int = 0
    completed_amount: int = 0
    failed_amount: int = 0
    reversed_amount: int = 0
    total_commission: int = 0
    total_tax: int = 0
    pending_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    reversed_count: int = 0
