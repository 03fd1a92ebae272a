from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from config.constants import DEFAULT_COMMISSION_PERCENTAGE


class VendorAccountStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    VERIFIED = "verified"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class VendorSettlementAccount(BaseModel):
    id: str
    vendor_id: str

    # gateway payout destination (linked account / fund account)
    destination_account_id: str

    commission_percentage: Decimal = Field(DEFAULT_COMMISSION_PERCENTAGE, ge=0, le=100)
    auto_payout_enabled: bool = True

    # withholding eligibility
    withholding_applicable: bool = True
    tax_id: Optional[str] = None            # PAN

    status: VendorAccountStatus = VendorAccountStatus.PENDING

    business_name: Optional[str] = None
    contact_email: Optional[str] = None

    reviewed_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    verification_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    suspended_at: Optional[datetime] = None
    suspension_reason: Optional[str] = None

    created_at: datetime
    updated_at: datetime

    @property
    def has_tax_id(self) -> bool:
        return bool((self.tax_id or "").strip())

    def to_doc(self) -> dict:
        return self.model_dump(mode="json")
