from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class AlertKind(str, Enum):
    PAYOUT_RETRIES_EXHAUSTED = "payout_retries_exhausted"
    WEBHOOK_PROCESSING_FAILED = "webhook_processing_failed"
    REVERSAL_BLOCKED = "reversal_blocked"
    COD_PAYOUT_BLOCKED = "cod_payout_blocked"
    ILLEGAL_TRANSITION = "illegal_transition"
    TRANSFER_MISMATCH = "transfer_mismatch"
    TRANSFER_SETTLED_OUTSIDE_PROCESSING = "transfer_settled_outside_processing"


class AdminAlert(BaseModel):
    kind: AlertKind
    entity_id: str
    message: str
    vendor_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    def to_doc(self) -> dict:
        return self.model_dump(mode="json")


class VendorNotificationKind(str, Enum):
    PAYOUT_COMPLETED = "payout_completed"
    PAYOUT_FAILED = "payout_failed"


class VendorNotification(BaseModel):
    vendor_id: str
    payout_id: str
    kind: VendorNotificationKind
    message: str
    amount: int = 0
    created_at: datetime

    def to_doc(self) -> dict:
        return self.model_dump(mode="json")
