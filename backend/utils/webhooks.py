"""
Webhook reconciliation.

Every inbound notification is reduced to a deterministic key (event type plus
the underlying entity id, never the delivery id) and recorded with an atomic
insert-if-absent before any side effect runs. A second delivery of the same
event finds the record and is answered as a duplicate.

Handler failures are recorded on the event and escalated to the admin queue;
the caller still gets a success answer so the gateway does not start a
redelivery storm.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from models.alert import AlertKind
from models.payment import PaymentMethod
from models.payout import PayoutErrorDetail, PayoutStatus, ReleaseTrigger
from models.webhook import (
    DeliveryUpdate,
    GatewayEvent,
    OrderPaid,
    PaymentCaptured,
    PaymentFailed,
    RefundProcessed,
    TransferFailed,
    TransferProcessed,
    UnhandledEvent,
    WebhookEventRecord,
    WebhookEventStatus,
)
from utils.cod import CODService
from utils.errors import IllegalTransition, PayoutStateError
from utils.notifications import Notifier
from utils.payments import PaymentService
from utils.payout_state import REVERSIBLE_STATES
from utils.repositories import OrderRepository, PayoutRepository, WebhookEventRepository
from utils.risk import CustomerRiskScorer
from utils.transfers import TransferOrchestrator

logger = logging.getLogger(__name__)


# =====================================================
# PARSING
# =====================================================

def _entity(payload: dict, name: str) -> dict:
    wrapper = (payload.get("payload") or {}).get(name) or {}
    return wrapper.get("entity") or {}


def _notes(entity: dict) -> dict:
    # Razorpay sends an empty list when no notes were set
    notes = entity.get("notes")
    return notes if isinstance(notes, dict) else {}


def parse_event(payload: dict) -> GatewayEvent:
    """Map a Razorpay webhook body onto the event union."""
    event = payload.get("event") or "unknown"

    match event:
        case "payment.captured" | "payment.failed":
            payment = _entity(payload, "payment")
            if not payment.get("id"):
                return UnhandledEvent(event)
            if event == "payment.captured":
                return PaymentCaptured(
                    payment_id=payment["id"],
                    gateway_order_id=payment.get("order_id"),
                    amount=int(payment.get("amount") or 0),
                    notes=_notes(payment),
                )
            return PaymentFailed(
                payment_id=payment["id"],
                gateway_order_id=payment.get("order_id"),
                error_code=payment.get("error_code"),
                error_description=payment.get("error_description"),
            )

        case "transfer.processed":
            transfer = _entity(payload, "transfer")
            if not transfer.get("id"):
                return UnhandledEvent(event)
            return TransferProcessed(
                transfer_id=transfer["id"],
                amount=int(transfer.get("amount") or 0),
                recipient=transfer.get("recipient"),
                payout_id=_notes(transfer).get("payout_id"),
            )

        case "transfer.failed":
            transfer = _entity(payload, "transfer")
            if not transfer.get("id"):
                return UnhandledEvent(event)
            error = transfer.get("error") or {}
            return TransferFailed(
                transfer_id=transfer["id"],
                payout_id=_notes(transfer).get("payout_id"),
                error_code=error.get("code"),
                error_description=error.get("description") or transfer.get("failure_reason"),
                error_source=error.get("source"),
                error_step=error.get("step"),
                error_reason=error.get("reason"),
            )

        case "refund.processed":
            refund = _entity(payload, "refund")
            if not refund.get("id"):
                return UnhandledEvent(event)
            return RefundProcessed(
                refund_id=refund["id"],
                payment_id=refund.get("payment_id"),
                amount=int(refund.get("amount") or 0),
            )

        case "order.paid":
            order = _entity(payload, "order")
            if not order.get("id"):
                return UnhandledEvent(event)
            return OrderPaid(
                gateway_order_id=order["id"],
                payment_id=_entity(payload, "payment").get("id"),
                amount=int(order.get("amount_paid") or 0),
            )

        case _:
            return UnhandledEvent(event)


def event_key(event, fallback_id: Optional[str] = None) -> str:
    entity_id = event.entity_id or fallback_id or "none"
    return f"{event.event_type}:{entity_id}"


# =====================================================
# RECONCILER
# =====================================================

class WebhookReconciler:
    def __init__(
        self,
        *,
        events: WebhookEventRepository,
        payments: PaymentService,
        orchestrator: TransferOrchestrator,
        payouts: PayoutRepository,
        orders: OrderRepository,
        cod: CODService,
        scorer: CustomerRiskScorer,
        notifier: Notifier,
        retention_days: int = 7,
        clock=datetime.utcnow,
    ):
        self.events = events
        self.payments = payments
        self.orchestrator = orchestrator
        self.payouts = payouts
        self.orders = orders
        self.cod = cod
        self.scorer = scorer
        self.notifier = notifier
        self.retention_seconds = int(timedelta(days=retention_days).total_seconds())
        self._clock = clock

    async def handle(self, payload: dict) -> dict:
        fallback = payload.get("created_at")
        return await self.handle_event(parse_event(payload), fallback_id=str(fallback) if fallback else None)

    async def handle_event(self, event, *, fallback_id: Optional[str] = None) -> dict:
        key = event_key(event, fallback_id)
        record = WebhookEventRecord(
            key=key,
            event_type=event.event_type,
            entity_id=event.entity_id,
            received_at=self._clock(),
        )

        if not await self.events.record_received(record, self.retention_seconds):
            existing = await self.events.get(key)
            logger.info("WEBHOOK_DUPLICATE key=%s", key)
            return {
                "status": "duplicate",
                "key": key,
                "result": existing.result if existing else None,
            }

        try:
            result = await self._dispatch(event)
        except IllegalTransition as e:
            logger.critical("WEBHOOK_ILLEGAL_TRANSITION key=%s error=%s", key, e)
            await self.notifier.alert_admin(
                AlertKind.ILLEGAL_TRANSITION,
                key,
                str(e),
                details={"entity": e.entity_id, "from": e.current, "to": e.target},
            )
            record.error = str(e)
            result = {"error": str(e)}
        except Exception as e:
            logger.exception("WEBHOOK_PROCESSING_FAILED key=%s", key)
            await self.notifier.alert_admin(
                AlertKind.WEBHOOK_PROCESSING_FAILED,
                key,
                f"{e.__class__.__name__}: {e}",
                details={"event_type": event.event_type, "entity_id": event.entity_id},
            )
            record.error = f"{e.__class__.__name__}: {e}"
            result = {"error": record.error}

        record.status = WebhookEventStatus.PROCESSED
        record.result = result
        record.processed_at = self._clock()
        await self.events.save(record, self.retention_seconds)

        logger.info("WEBHOOK_PROCESSED key=%s", key)
        return {"status": "processed", "key": key, "result": result}

    async def _dispatch(self, event) -> dict:
        match event:
            case PaymentCaptured():
                return await self._on_payment_captured(event)
            case PaymentFailed():
                return await self._on_payment_failed(event)
            case TransferProcessed():
                return await self._on_transfer_processed(event)
            case TransferFailed():
                return await self._on_transfer_failed(event)
            case RefundProcessed():
                return await self._on_refund_processed(event)
            case OrderPaid():
                return await self._on_order_paid(event)
            case DeliveryUpdate():
                return await self._on_delivery(event)
            case UnhandledEvent(event_type=event_type):
                logger.info("WEBHOOK_IGNORED type=%s", event_type)
                return {"ignored": True, "event": event_type}
        raise TypeError(f"Unsupported event {event!r}")

    # ---- payments --------------------------------------------------

    async def _on_payment_captured(self, event: PaymentCaptured) -> dict:
        payment, payout = await self.payments.mark_captured(
            event.payment_id,
            amount=event.amount,
            gateway_order_id=event.gateway_order_id,
            notes=event.notes,
        )
        return {
            "payment_id": payment.payment_id,
            "payment_status": payment.status.value,
            "payout_id": payout.id if payout else None,
            "payout_status": payout.status.value if payout else None,
        }

    async def _on_payment_failed(self, event: PaymentFailed) -> dict:
        payment = await self.payments.mark_failed(
            event.payment_id,
            gateway_order_id=event.gateway_order_id,
            error_code=event.error_code,
            error_description=event.error_description,
        )
        return {"payment_id": payment.payment_id, "payment_status": payment.status.value}

    async def _on_order_paid(self, event: OrderPaid) -> dict:
        order = await self.payments.mark_order_paid(event.gateway_order_id, payment_id=event.payment_id)
        if not order:
            return {"order": "not_found"}
        return {"order_id": order.order_id, "payment_status": order.payment_status.value}

    # ---- transfers -------------------------------------------------

    async def _payout_for_transfer(self, transfer_id: str, payout_id: Optional[str]):
        """
        Resolve the payout a transfer event refers to.

        The transfer reference index wins. The payout_id from the notes is only
        trusted when that payout has no transfer of its own yet; a payout bound
        to a different transfer is reported as a mismatch and left alone.
        """
        payout = await self.payouts.find_by_transfer_reference(transfer_id)
        if payout is not None:
            return payout, False
        if not payout_id:
            return None, False

        payout = await self.payouts.get(payout_id)
        if payout is None:
            return None, False
        if payout.transfer_reference and payout.transfer_reference != transfer_id:
            logger.error(
                "WEBHOOK_TRANSFER_MISMATCH payout=%s expected=%s received=%s",
                payout.id,
                payout.transfer_reference,
                transfer_id,
            )
            await self.notifier.alert_admin(
                AlertKind.TRANSFER_MISMATCH,
                transfer_id,
                f"Transfer {transfer_id} names payout {payout.id}, which is bound to {payout.transfer_reference}",
                vendor_id=payout.vendor_id,
                details={
                    "payout_id": payout.id,
                    "payout_status": payout.status.value,
                    "expected_transfer": payout.transfer_reference,
                },
            )
            return payout, True
        return payout, False

    @staticmethod
    def _mismatch_result(payout, transfer_id: str) -> dict:
        return {
            "payout_id": payout.id,
            "payout_status": payout.status.value,
            "changed": False,
            "transfer_mismatch": True,
            "transfer_id": transfer_id,
        }

    async def _on_transfer_processed(self, event: TransferProcessed) -> dict:
        payout, mismatch = await self._payout_for_transfer(event.transfer_id, event.payout_id)
        if not payout:
            logger.error("WEBHOOK_PAYOUT_NOT_FOUND transfer=%s", event.transfer_id)
            return {"payout": "not_found", "transfer_id": event.transfer_id}
        if mismatch:
            return self._mismatch_result(payout, event.transfer_id)

        if payout.status in (PayoutStatus.FAILED, PayoutStatus.PENDING):
            # the vendor has been paid although we recorded no live transfer
            await self.orchestrator.block_retries(
                payout,
                "settled_at_gateway",
                transfer_reference=event.transfer_id,
            )
            await self.notifier.alert_admin(
                AlertKind.TRANSFER_SETTLED_OUTSIDE_PROCESSING,
                payout.id,
                f"Transfer {event.transfer_id} settled while payout is {payout.status.value}",
                vendor_id=payout.vendor_id,
                details={"transfer_id": event.transfer_id, "status": payout.status.value, "amount": event.amount},
            )
            return {
                "payout_id": payout.id,
                "payout_status": payout.status.value,
                "changed": False,
                "reconciliation_required": True,
            }

        changed = await self.orchestrator.complete_transfer(payout)
        if payout.remittance_id:
            await self.cod.mark_remittance_completed(payout.remittance_id)
        return {"payout_id": payout.id, "payout_status": payout.status.value, "changed": changed}

    async def _on_transfer_failed(self, event: TransferFailed) -> dict:
        payout, mismatch = await self._payout_for_transfer(event.transfer_id, event.payout_id)
        if not payout:
            logger.error("WEBHOOK_PAYOUT_NOT_FOUND transfer=%s", event.transfer_id)
            return {"payout": "not_found", "transfer_id": event.transfer_id}
        if mismatch:
            return self._mismatch_result(payout, event.transfer_id)

        changed = await self.orchestrator.fail_transfer(payout, PayoutErrorDetail(
            code=event.error_code,
            description=event.error_description,
            source=event.error_source,
            step=event.error_step,
            reason=event.error_reason,
        ))
        return {
            "payout_id": payout.id,
            "payout_status": payout.status.value,
            "changed": changed,
            "next_retry_at": payout.next_retry_at.isoformat() if payout.next_retry_at else None,
        }

    async def reconcile_transfer(self, payout_id: str) -> dict:
        """Pull the transfer's current state from the gateway and apply it like a webhook."""
        payout = await self.orchestrator.get_payout(payout_id)
        if not payout.transfer_reference:
            raise PayoutStateError(f"Payout {payout_id} has no gateway transfer")

        transfer = await self.orchestrator.gateway.fetch_transfer(payout.transfer_reference)
        transfer_status = (transfer.get("status") or "").lower()

        if transfer_status == "processed":
            result = await self._on_transfer_processed(
                TransferProcessed(transfer_id=payout.transfer_reference, payout_id=payout.id)
            )
        elif transfer_status == "failed":
            error = transfer.get("error") or {}
            result = await self._on_transfer_failed(TransferFailed(
                transfer_id=payout.transfer_reference,
                payout_id=payout.id,
                error_code=error.get("code"),
                error_description=error.get("description"),
                error_source=error.get("source"),
                error_step=error.get("step"),
                error_reason=error.get("reason"),
            ))
        else:
            result = {"payout_id": payout.id, "payout_status": payout.status.value, "changed": False}

        logger.info("TRANSFER_RECONCILED payout=%s transfer_status=%s", payout_id, transfer_status)
        return {**result, "transfer_status": transfer_status}

    # ---- refunds ---------------------------------------------------

    async def _on_refund_processed(self, event: RefundProcessed) -> dict:
        payment_id = event.payment_id
        if not payment_id:
            refund = await self.orchestrator.gateway.fetch_refund(event.refund_id)
            payment_id = refund.get("payment_id")
        if not payment_id:
            return {"refund_id": event.refund_id, "payment": "unknown"}

        payment = await self.payments.mark_refund_processed(payment_id, refund_id=event.refund_id, amount=event.amount)

        if payment.order_id:
            candidates = await self.payouts.find_by_order(payment.order_id)
        else:
            claimed = await self.payouts.find_by_claim(None, payment_id)
            candidates = [claimed] if claimed else []

        reason = f"Refund {event.refund_id} processed for payment {payment_id}"
        reversed_ids, blocked_ids = [], []
        for payout in candidates:
            if payout.payment_id and payout.payment_id != payment_id:
                continue

            if payout.status == PayoutStatus.REVERSED or payout.status in REVERSIBLE_STATES:
                reversed_payout = await self.orchestrator.reverse_payout(payout.id, reason)
                reversed_ids.append(reversed_payout.id)
                continue

            blocked_ids.append(payout.id)
            # the buyer has their money back; the vendor must not be paid by a later retry
            await self.orchestrator.block_retries(payout, "refunded")
            await self.notifier.alert_admin(
                AlertKind.REVERSAL_BLOCKED,
                payout.id,
                f"Refund arrived while payout is {payout.status.value}",
                vendor_id=payout.vendor_id,
                details={"refund_id": event.refund_id, "payment_id": payment_id, "status": payout.status.value},
            )

        return {
            "payment_id": payment_id,
            "refund_id": event.refund_id,
            "reversed": reversed_ids,
            "blocked": blocked_ids,
        }

    # ---- delivery --------------------------------------------------

    async def handle_delivery(self, update: DeliveryUpdate) -> dict:
        return await self.handle_event(update)

    async def _on_delivery(self, update: DeliveryUpdate) -> dict:
        order = await self.orders.find_by_waybill(update.waybill)
        if order is None and update.order_id:
            order = await self.orders.get(update.order_id)
        if not order:
            return {"order": "not_found", "waybill": update.waybill}

        status = update.status.upper()
        is_cod = order.payment_method == PaymentMethod.COD
        result = {"order_id": order.order_id, "courier_status": status}

        if status == "DELIVERED":
            await self.payments.mark_delivered(order)
            released = await self.orchestrator.release_order_payouts(
                order.order_id,
                ReleaseTrigger.DELIVERY_CONFIRMED,
            )
            result["released"] = [p.id for p in released]
            if is_cod and order.customer_id:
                profile = await self.scorer.record_order_outcome(order.customer_id, delivered=True)
                result["risk_level"] = profile.risk_level.value
        elif status == "RTO":
            if is_cod and order.customer_id:
                profile = await self.scorer.record_order_outcome(order.customer_id, delivered=False)
                result["risk_level"] = profile.risk_level.value
        elif status == "RETURNED":
            if is_cod and order.customer_id:
                profile = await self.scorer.record_return(order.customer_id)
                result["risk_level"] = profile.risk_level.value
        else:
            result["ignored"] = True

        return result
