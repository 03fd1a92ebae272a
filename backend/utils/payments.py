import logging
from datetime import datetime, timedelta
from typing import Optional

from models.payment import (
    OrderPaymentStatus,
    OrderRecord,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
)
from models.payout import Payout
from utils.audit import AuditLog
from utils.errors import InvalidSignature, InvalidSplitInput, OrderNotFound
from utils.gateway import PaymentGateway
from utils.repositories import OrderRepository, PaymentRepository
from utils.split import normalize_gross
from utils.transfers import TransferOrchestrator

logger = logging.getLogger(__name__)


class PaymentService:
    """
    Local payment and order records, and the hand-off from a captured payment
    to payout creation.
    """

    def __init__(
        self,
        *,
        orders: OrderRepository,
        payments: PaymentRepository,
        gateway: PaymentGateway,
        orchestrator: TransferOrchestrator,
        audit: AuditLog,
        hold_until_delivery_days: int = 7,
        clock=datetime.utcnow,
    ):
        self.orders = orders
        self.payments = payments
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.audit = audit
        self.hold_until_delivery_days = hold_until_delivery_days
        self._clock = clock

    # =====================================================
    # ORDERS
    # =====================================================

    async def register_order(
        self,
        order_id: str,
        vendor_id: str,
        amount,
        *,
        customer_id: Optional[str] = None,
        payment_method: PaymentMethod = PaymentMethod.PREPAID,
        collectible_amount=None,
        hold_until_delivery: bool = False,
        waybill: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
    ) -> OrderRecord:
        existing = await self.orders.get(order_id)
        if existing:
            return existing

        amount = normalize_gross(amount)
        if collectible_amount is not None:
            collectible_amount = normalize_gross(collectible_amount)
        elif payment_method == PaymentMethod.COD:
            collectible_amount = amount

        now = self._clock()
        order = OrderRecord(
            order_id=order_id,
            vendor_id=vendor_id,
            customer_id=customer_id,
            amount=amount,
            collectible_amount=collectible_amount,
            payment_method=payment_method,
            payment_status=(
                OrderPaymentStatus.COD_PENDING if payment_method == PaymentMethod.COD
                else OrderPaymentStatus.PENDING
            ),
            gateway_order_id=gateway_order_id,
            hold_until_delivery=hold_until_delivery,
            waybill=waybill,
            created_at=now,
            updated_at=now,
        )
        await self.orders.save(order)
        logger.info("ORDER_REGISTERED order=%s vendor=%s method=%s", order_id, vendor_id, payment_method.value)
        return order

    async def get_order(self, order_id: str) -> OrderRecord:
        order = await self.orders.get(order_id)
        if not order:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def attach_waybill(self, order_id: str, waybill: str) -> OrderRecord:
        order = await self.get_order(order_id)
        order.waybill = waybill
        order.updated_at = self._clock()
        await self.orders.save(order)
        return order

    async def mark_delivered(self, order: OrderRecord) -> OrderRecord:
        if order.delivered_at is None:
            order.delivered_at = self._clock()
            order.updated_at = order.delivered_at
            await self.orders.save(order)
        return order

    # =====================================================
    # CHECKOUT
    # =====================================================

    async def create_checkout_order(
        self,
        order_id: str,
        amount,
        vendor_id: str,
        *,
        customer_id: Optional[str] = None,
        hold_until_delivery: bool = False,
    ) -> dict:
        amount = normalize_gross(amount)
        if amount <= 0:
            raise InvalidSplitInput("Checkout amount must be positive")

        gateway_order = await self.gateway.create_order(
            amount=amount,
            receipt=order_id,
            notes={"order_id": order_id, "vendor_id": vendor_id},
        )

        order = await self.orders.get(order_id)
        if order is None:
            order = await self.register_order(
                order_id,
                vendor_id,
                amount,
                customer_id=customer_id,
                hold_until_delivery=hold_until_delivery,
            )
        order.gateway_order_id = gateway_order["id"]
        order.updated_at = self._clock()
        await self.orders.save(order)

        logger.info("CHECKOUT_ORDER_CREATED order=%s gateway_order=%s amount=%s", order_id, gateway_order["id"], amount)
        return {"order": order, "gateway_order": gateway_order}

    async def verify_checkout(self, gateway_order_id: str, payment_id: str, signature: str) -> PaymentRecord:
        if not self.gateway.verify_payment_signature(
            gateway_order_id=gateway_order_id,
            payment_id=payment_id,
            signature=signature,
        ):
            logger.warning("CHECKOUT_SIGNATURE_INVALID gateway_order=%s payment=%s", gateway_order_id, payment_id)
            raise InvalidSignature("Payment signature verification failed")

        order = await self.orders.find_by_gateway_order(gateway_order_id)
        if not order:
            raise OrderNotFound(f"No order for gateway order {gateway_order_id}")

        payment = await self._payment(payment_id, order=order, gateway_order_id=gateway_order_id)
        await self.payments.save(payment)

        order.payment_id = payment_id
        order.updated_at = self._clock()
        await self.orders.save(order)
        return payment

    async def capture_payment(self, payment_id: str, amount) -> dict:
        """Direct capture: capture at the gateway, then settle like a captured webhook."""
        amount = normalize_gross(amount)
        captured = await self.gateway.capture_payment(payment_id, amount)
        payment, payout = await self.mark_captured(
            payment_id,
            amount=int(captured.get("amount", amount)),
            gateway_order_id=captured.get("order_id"),
            notes=captured.get("notes") or {},
        )
        return {"payment": payment, "payout": payout}

    # =====================================================
    # GATEWAY OUTCOMES
    # =====================================================

    async def _payment(
        self,
        payment_id: str,
        *,
        order: Optional[OrderRecord] = None,
        gateway_order_id: Optional[str] = None,
    ) -> PaymentRecord:
        payment = await self.payments.get(payment_id)
        if payment:
            return payment
        now = self._clock()
        return PaymentRecord(
            payment_id=payment_id,
            order_id=order.order_id if order else None,
            gateway_order_id=gateway_order_id or (order.gateway_order_id if order else None),
            vendor_id=order.vendor_id if order else None,
            amount=order.amount if order else 0,
            created_at=now,
            updated_at=now,
        )

    async def _order_for(self, payment: PaymentRecord, gateway_order_id: Optional[str]) -> Optional[OrderRecord]:
        if payment.order_id:
            order = await self.orders.get(payment.order_id)
            if order:
                return order
        gateway_order_id = gateway_order_id or payment.gateway_order_id
        if gateway_order_id:
            return await self.orders.find_by_gateway_order(gateway_order_id)
        return None

    def _hold_until(self, order: Optional[OrderRecord]) -> Optional[datetime]:
        if not order or not order.hold_until_delivery or order.delivered_at:
            return None
        return self._clock() + timedelta(days=self.hold_until_delivery_days)

    async def mark_captured(
        self,
        payment_id: str,
        *,
        amount: int,
        gateway_order_id: Optional[str] = None,
        notes: Optional[dict] = None,
    ) -> tuple[PaymentRecord, Optional[Payout]]:
        """
        Record a capture and, when a vendor can be identified, create the
        payout for it. Safe to call more than once for the same payment.
        """
        notes = notes or {}
        payment = await self._payment(payment_id, gateway_order_id=gateway_order_id)
        order = await self._order_for(payment, gateway_order_id)

        now = self._clock()
        if order:
            payment.order_id = order.order_id
            payment.vendor_id = payment.vendor_id or order.vendor_id
        payment.vendor_id = notes.get("vendor_id") or payment.vendor_id
        payment.gateway_order_id = gateway_order_id or payment.gateway_order_id
        payment.amount = amount
        payment.notes = {**payment.notes, **notes}
        if payment.status != PaymentStatus.CAPTURED:
            payment.status = PaymentStatus.CAPTURED
            payment.captured_at = now
        payment.updated_at = now
        await self.payments.save(payment)

        if order and order.payment_status != OrderPaymentStatus.PAID:
            order.payment_status = OrderPaymentStatus.PAID
            order.payment_id = payment_id
            order.updated_at = now
            await self.orders.save(order)

        logger.info("PAYMENT_CAPTURED payment=%s order=%s amount=%s", payment_id, payment.order_id, amount)

        if not payment.vendor_id:
            return payment, None

        payout = await self.orchestrator.create_payout(
            payment.vendor_id,
            amount,
            order_id=payment.order_id,
            payment_id=payment_id,
            hold_until=self._hold_until(order),
            metadata={"source": "payment_captured"},
        )
        return payment, payout

    async def mark_failed(
        self,
        payment_id: str,
        *,
        gateway_order_id: Optional[str] = None,
        error_code: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> PaymentRecord:
        payment = await self._payment(payment_id, gateway_order_id=gateway_order_id)
        now = self._clock()

        # a capture already seen wins over a late failure notice
        if payment.status == PaymentStatus.CAPTURED:
            logger.warning("PAYMENT_FAILED_AFTER_CAPTURE payment=%s", payment_id)
            return payment

        payment.status = PaymentStatus.FAILED
        payment.error_code = error_code
        payment.error_description = error_description
        payment.failed_at = now
        payment.updated_at = now
        await self.payments.save(payment)

        order = await self._order_for(payment, gateway_order_id)
        if order and order.payment_status == OrderPaymentStatus.PENDING:
            order.payment_status = OrderPaymentStatus.FAILED
            order.updated_at = now
            await self.orders.save(order)

        logger.info("PAYMENT_FAILED payment=%s code=%s", payment_id, error_code)
        return payment

    async def mark_order_paid(
        self,
        gateway_order_id: str,
        *,
        payment_id: Optional[str] = None,
    ) -> Optional[OrderRecord]:
        order = await self.orders.find_by_gateway_order(gateway_order_id)
        if not order:
            return None
        if order.payment_status != OrderPaymentStatus.PAID:
            order.payment_status = OrderPaymentStatus.PAID
            order.payment_id = payment_id or order.payment_id
            order.updated_at = self._clock()
            await self.orders.save(order)
            logger.info("ORDER_PAID order=%s gateway_order=%s", order.order_id, gateway_order_id)
        return order

    async def mark_refund_processed(
        self,
        payment_id: str,
        *,
        refund_id: str,
        amount: int,
    ) -> PaymentRecord:
        payment = await self._payment(payment_id)
        now = self._clock()
        if payment.refund_id != refund_id:
            payment.refunded_amount += amount
        payment.status = PaymentStatus.REFUNDED
        payment.refund_id = refund_id
        payment.refunded_at = now
        payment.updated_at = now
        await self.payments.save(payment)

        order = await self._order_for(payment, None)
        if order:
            order.payment_status = OrderPaymentStatus.REFUNDED
            order.updated_at = now
            await self.orders.save(order)

        await self.audit.log(None, "system", "PAYMENT_REFUNDED", {
            "payment_id": payment_id,
            "refund_id": refund_id,
            "amount": amount,
        })
        return payment
