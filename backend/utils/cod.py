import logging
import re
import uuid
from datetime import datetime
from typing import Optional

from config.constants import (
    COD_CHARGES_PERCENTAGE,
    DEFAULT_SERVICEABLE_PINCODES,
    MAX_COD_VALUE_NEW_CUSTOMER,
    MAX_COD_VALUE_TRUSTED_CUSTOMER,
    MIN_ORDERS_FOR_HIGH_VALUE,
)
from models.alert import AlertKind
from models.cod import (
    CODAvailability,
    CODRemittance,
    CustomerRiskProfile,
    RemittanceStatus,
    RiskLevel,
)
from models.payment import OrderPaymentStatus
from models.payout import PayoutType
from utils.audit import AuditLog
from utils.errors import AccountNotEligible, InvalidSplitInput, RemittanceNotFound
from utils.notifications import Notifier
from utils.repositories import OrderRepository, RemittanceRepository, ServiceabilityRepository
from utils.risk import CustomerRiskScorer
from utils.split import normalize_gross
from utils.transfers import TransferOrchestrator

logger = logging.getLogger(__name__)

PINCODE_RE = re.compile(r"^\d{6}$")


def _rupees(paise: int) -> str:
    return f"₹{paise / 100:.2f}"


def max_cod_value_for(profile: CustomerRiskProfile) -> int:
    if profile.total_orders < MIN_ORDERS_FOR_HIGH_VALUE or profile.risk_level == RiskLevel.HIGH:
        return MAX_COD_VALUE_NEW_CUSTOMER

    if profile.risk_level == RiskLevel.LOW and profile.successful_cod_orders >= MIN_ORDERS_FOR_HIGH_VALUE:
        return MAX_COD_VALUE_TRUSTED_CUSTOMER

    return (MAX_COD_VALUE_NEW_CUSTOMER + MAX_COD_VALUE_TRUSTED_CUSTOMER) // 2


def cod_charges_for(order_value: int) -> int:
    return order_value * COD_CHARGES_PERCENTAGE // 100


class CODService:
    """
    Cash-on-delivery eligibility and remittance matching.

    A remittance only turns into a payout when it matches the order's
    collectible amount exactly; anything else is kept as mismatched for
    manual reconciliation and never corrected.
    """

    def __init__(
        self,
        *,
        remittances: RemittanceRepository,
        orders: OrderRepository,
        serviceability: ServiceabilityRepository,
        scorer: CustomerRiskScorer,
        orchestrator: TransferOrchestrator,
        notifier: Notifier,
        audit: AuditLog,
        serviceable_pincodes: Optional[list[str]] = None,
        accept_any_valid_pincode: bool = True,
        pincode_cache_seconds: int = 60 * 60 * 24 * 7,
        clock=datetime.utcnow,
    ):
        self.remittances = remittances
        self.orders = orders
        self.serviceability = serviceability
        self.scorer = scorer
        self.orchestrator = orchestrator
        self.notifier = notifier
        self.audit = audit
        self.serviceable_pincodes = serviceable_pincodes or list(DEFAULT_SERVICEABLE_PINCODES)
        self.accept_any_valid_pincode = accept_any_valid_pincode
        self.pincode_cache_seconds = pincode_cache_seconds
        self._clock = clock

    # =====================================================
    # AVAILABILITY
    # =====================================================

    async def is_pincode_serviceable(self, pincode: str) -> bool:
        pincode = (pincode or "").strip()
        if not PINCODE_RE.match(pincode):
            return False

        if not await self.serviceability.loaded():
            await self.serviceability.load(self.serviceable_pincodes, self.pincode_cache_seconds)

        if await self.serviceability.contains(pincode):
            return True

        if self.accept_any_valid_pincode:
            await self.serviceability.add(pincode)
            return True
        return False

    async def validate_cod_availability(self, pincode: str, order_value, customer_id: str) -> CODAvailability:
        try:
            order_value = normalize_gross(order_value)
        except InvalidSplitInput as e:
            return CODAvailability(available=False, reason=f"Invalid order value: {e.message}")

        if not await self.is_pincode_serviceable(pincode):
            return CODAvailability(available=False, reason=f"COD not available for pincode {pincode}")

        profile = await self.scorer.get_profile(customer_id)
        if profile.risk_level == RiskLevel.HIGH:
            return CODAvailability(
                available=False,
                reason="COD not available due to high risk profile",
                risk_level=profile.risk_level,
            )

        max_cod_value = max_cod_value_for(profile)
        if order_value > max_cod_value:
            return CODAvailability(
                available=False,
                reason=f"Order value ({_rupees(order_value)}) exceeds COD limit ({_rupees(max_cod_value)})",
                max_cod_value=max_cod_value,
                risk_level=profile.risk_level,
            )

        return CODAvailability(
            available=True,
            max_cod_value=max_cod_value,
            cod_charges=cod_charges_for(order_value),
            risk_level=profile.risk_level,
        )

    # =====================================================
    # REMITTANCES
    # =====================================================

    async def get_remittance(self, remittance_id: str) -> CODRemittance:
        remittance = await self.remittances.get(remittance_id)
        if not remittance:
            raise RemittanceNotFound(f"Remittance {remittance_id} not found")
        return remittance

    async def record_remittance(
        self,
        order_id: str,
        vendor_id: str,
        amount,
        logistics_partner: str,
        awb_number: Optional[str] = None,
    ) -> CODRemittance:
        amount = normalize_gross(amount)
        now = self._clock()
        remittance_id = uuid.uuid4().hex

        order = await self.orders.get(order_id)
        notes = None
        if not order:
            notes = "Order not found"
        elif order.vendor_id != vendor_id:
            notes = f"Vendor mismatch: order belongs to {order.vendor_id}"
        elif order.expected_collectible != amount:
            notes = (
                f"Amount mismatch: Expected {_rupees(order.expected_collectible)}, "
                f"Received {_rupees(amount)}"
            )

        status = RemittanceStatus.MISMATCHED if notes else RemittanceStatus.VERIFIED

        if status == RemittanceStatus.VERIFIED:
            holder = await self.remittances.claim_verified(order_id, remittance_id)
            if holder:
                existing = await self.remittances.get(holder)
                if existing:
                    logger.info("COD_REMITTANCE_DUPLICATE order=%s remittance=%s", order_id, existing.id)
                    return existing

        remittance = CODRemittance(
            id=remittance_id,
            order_id=order_id,
            vendor_id=vendor_id,
            amount=amount,
            expected_amount=order.expected_collectible if order else None,
            logistics_partner=logistics_partner,
            awb_number=awb_number,
            remittance_ref=f"COD_{int(now.timestamp() * 1000)}_{remittance_id[:8]}",
            status=status,
            verification_notes=notes,
            remittance_date=now,
            created_at=now,
            updated_at=now,
        )
        await self.remittances.save(remittance)

        if status == RemittanceStatus.MISMATCHED:
            logger.warning("COD_REMITTANCE_MISMATCHED order=%s remittance=%s notes=%s", order_id, remittance.id, notes)
        else:
            await self._settle_verified(remittance, order)

        await self.audit.log(logistics_partner, "logistics", "COD_REMITTANCE_RECORDED", {
            "remittance_id": remittance.id,
            "order_id": order_id,
            "vendor_id": vendor_id,
            "amount": amount,
            "status": remittance.status.value,
        })
        return remittance

    async def _settle_verified(self, remittance: CODRemittance, order) -> None:
        order.payment_status = OrderPaymentStatus.PAID
        order.updated_at = self._clock()
        await self.orders.save(order)

        try:
            payout = await self.orchestrator.create_payout(
                remittance.vendor_id,
                remittance.amount,
                order_id=remittance.order_id,
                remittance_id=remittance.id,
                payout_type=PayoutType.COD_REMITTANCE,
                metadata={"source": "cod_remittance", "logistics_partner": remittance.logistics_partner},
            )
        except AccountNotEligible as e:
            # the remittance stays verified; an operator settles it once the account is fixed
            await self.notifier.alert_admin(
                AlertKind.COD_PAYOUT_BLOCKED,
                remittance.id,
                e.message,
                vendor_id=remittance.vendor_id,
                details={"order_id": remittance.order_id, "amount": remittance.amount},
            )
            return

        remittance.payout_id = payout.id
        remittance.updated_at = self._clock()
        await self.remittances.save(remittance)
        logger.info("COD_REMITTANCE_VERIFIED remittance=%s payout=%s", remittance.id, payout.id)

    async def mark_remittance_completed(self, remittance_id: str) -> Optional[CODRemittance]:
        remittance = await self.remittances.get(remittance_id)
        if not remittance or remittance.status != RemittanceStatus.VERIFIED:
            return remittance
        remittance.status = RemittanceStatus.COMPLETED
        remittance.updated_at = self._clock()
        await self.remittances.save(remittance)
        logger.info("COD_REMITTANCE_COMPLETED remittance=%s", remittance_id)
        return remittance

    async def get_cod_statistics(self, vendor_id: Optional[str] = None) -> dict:
        remittances = await self.remittances.list_all()
        if vendor_id:
            remittances = [r for r in remittances if r.vendor_id == vendor_id]

        verified = [r for r in remittances if r.status in {RemittanceStatus.VERIFIED, RemittanceStatus.COMPLETED}]
        mismatched = [r for r in remittances if r.status == RemittanceStatus.MISMATCHED]
        total = len(remittances)

        return {
            "total_remittances": total,
            "total_amount": sum(r.amount for r in remittances),
            "verified_count": len(verified),
            "completed_count": sum(1 for r in remittances if r.status == RemittanceStatus.COMPLETED),
            "mismatched_count": len(mismatched),
            "verification_rate": round(len(verified) / total * 100, 2) if total else 0.0,
        }
