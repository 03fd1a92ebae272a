from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from config.constants import DEFAULT_MIN_PAYOUT_AMOUNT


class PayoutFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class PayoutSchedule(BaseModel):
    vendor_id: str
    frequency: PayoutFrequency
    next_payout_date: datetime
    # paise; a vendor whose pending total is below this waits for the next run
    minimum_payout_amount: int = Field(DEFAULT_MIN_PAYOUT_AMOUNT, ge=0)
    active: bool = True

    last_run_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    def to_doc(self) -> dict:
        return self.model_dump(mode="json")
