from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"


class WebhookEventRecord(BaseModel):
    key: str
    event_type: str
    entity_id: Optional[str] = None
    status: WebhookEventStatus = WebhookEventStatus.RECEIVED
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    received_at: datetime
    processed_at: Optional[datetime] = None

    def to_doc(self) -> dict:
        return self.model_dump(mode="json")


# =====================================================
# EVENT UNION
# =====================================================

@dataclass(frozen=True)
class PaymentCaptured:
    payment_id: str
    gateway_order_id: Optional[str] = None
    amount: int = 0
    notes: dict = field(default_factory=dict)

    event_type = "payment.captured"

    @property
    def entity_id(self) -> str:
        return self.payment_id


@dataclass(frozen=True)
class PaymentFailed:
    payment_id: str
    gateway_order_id: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None

    event_type = "payment.failed"

    @property
    def entity_id(self) -> str:
        return self.payment_id


@dataclass(frozen=True)
class TransferProcessed:
    transfer_id: str
    amount: int = 0
    recipient: Optional[str] = None
    payout_id: Optional[str] = None

    event_type = "transfer.processed"

    @property
    def entity_id(self) -> str:
        return self.transfer_id


@dataclass(frozen=True)
class TransferFailed:
    transfer_id: str
    payout_id: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    error_source: Optional[str] = None
    error_step: Optional[str] = None
    error_reason: Optional[str] = None

    event_type = "transfer.failed"

    @property
    def entity_id(self) -> str:
        return self.transfer_id


@dataclass(frozen=True)
class RefundProcessed:
    refund_id: str
    payment_id: Optional[str] = None
    amount: int = 0

    event_type = "refund.processed"

    @property
    def entity_id(self) -> str:
        return self.refund_id


@dataclass(frozen=True)
class OrderPaid:
    gateway_order_id: str
    payment_id: Optional[str] = None
    amount: int = 0

    event_type = "order.paid"

    @property
    def entity_id(self) -> str:
        return self.gateway_order_id


@dataclass(frozen=True)
class UnhandledEvent:
    event_type: str
    entity_id: Optional[str] = None


GatewayEvent = Union[
    PaymentCaptured,
    PaymentFailed,
    TransferProcessed,
    TransferFailed,
    RefundProcessed,
    OrderPaid,
    UnhandledEvent,
]


@dataclass(frozen=True)
class DeliveryUpdate:
    """Courier status notification for one shipment."""

    waybill: str
    status: str
    order_id: Optional[str] = None
    delivered_at: Optional[str] = None

    @property
    def event_type(self) -> str:
        return f"delivery.{self.status.lower()}"

    @property
    def entity_id(self) -> str:
        return self.waybill
