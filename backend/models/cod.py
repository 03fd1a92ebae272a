from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RemittanceStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    MISMATCHED = "mismatched"
    COMPLETED = "completed"


class CODRemittance(BaseModel):
    id: str
    order_id: str
    vendor_id: str
    amount: int = Field(..., ge=0)
    expected_amount: Optional[int] = None
    logistics_partner: str
    awb_number: Optional[str] = None
    remittance_ref: str
    status: RemittanceStatus = RemittanceStatus.PENDING
    verification_notes: Optional[str] = None
    payout_id: Optional[str] = None
    remittance_date: datetime
    created_at: datetime
    updated_at: datetime

    def to_doc(self) -> dict:
        return self.model_dump(mode="json")


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CustomerRiskProfile(BaseModel):
    customer_id: str
    total_orders: int = 0
    successful_cod_orders: int = 0
    failed_cod_orders: int = 0
    returned_orders: int = 0
    return_rate: float = Field(0.0, ge=0, le=1)
    risk_score: int = Field(50, ge=0, le=100)
    risk_level: RiskLevel = RiskLevel.MEDIUM
    computed_at: Optional[datetime] = None

    def to_doc(self) -> dict:
        return self.model_dump(mode="json")


class CODAvailability(BaseModel):
    available: bool
    reason: Optional[str] = None
    max_cod_value: Optional[int] = None
    cod_charges: Optional[int] = None
    risk_level: Optional[RiskLevel] = None
