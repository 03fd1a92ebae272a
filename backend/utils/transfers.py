import asyncio
import logging
import uuid
from datetime import datetime
from typing import Optional

from config.constants import CURRENCY, TRANSFER_LOCK_SECONDS
from models.alert import VendorNotificationKind
from models.payout import (
    Payout,
    PayoutErrorDetail,
    PayoutStatus,
    PayoutType,
    ReleaseTrigger,
)
from models.vendor_account import VendorAccountStatus
from utils.audit import AuditLog
from utils.errors import GatewayError, PayoutNotFound, PayoutStateError, RetryBudgetExhausted
from utils.gateway import PaymentGateway
from utils.notifications import Notifier
from utils.payout_state import REVERSIBLE_STATES, transition
from utils.repositories import PayoutRepository
from utils.retry_scheduler import RetryScheduler
from utils.split import split
from utils.vendor_accounts import VendorAccountService

logger = logging.getLogger(__name__)


def _refuse_if_blocked(payout: Payout) -> None:
    if payout.retry_blocked_reason:
        raise PayoutStateError(
            f"Payout {payout.id} is blocked from transfer ({payout.retry_blocked_reason}); needs manual reconciliation"
        )


class TransferOrchestrator:
    """
    Creates payouts and moves them through the gateway.

    Only this class and the webhook reconciler mutate payouts. Every gateway
    call for a payout happens under that payout's transfer lock, so a payout
    never has two transfer attempts (or a transfer and a reversal) in flight.
    """

    def __init__(
        self,
        *,
        payouts: PayoutRepository,
        accounts: VendorAccountService,
        gateway: PaymentGateway,
        scheduler: RetryScheduler,
        notifier: Notifier,
        audit: AuditLog,
        max_retries: int = 5,
        clock=datetime.utcnow,
    ):
        self.payouts = payouts
        self.accounts = accounts
        self.gateway = gateway
        self.scheduler = scheduler
        self.notifier = notifier
        self.audit = audit
        self.max_retries = max_retries
        self._clock = clock

    async def get_payout(self, payout_id: str) -> Payout:
        payout = await self.payouts.get(payout_id)
        if not payout:
            raise PayoutNotFound(f"Payout {payout_id} not found")
        return payout

    # =====================================================
    # CREATE
    # =====================================================

    async def create_payout(
        self,
        vendor_id: str,
        gross_amount,
        *,
        order_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        remittance_id: Optional[str] = None,
        payout_type: PayoutType = PayoutType.ORDER,
        hold_until: Optional[datetime] = None,
        metadata: Optional[dict] = None,
    ) -> Payout:
        """
        Create the payout for one settlement event.

        Idempotent on (order_id, payment_id): a second call returns the first
        payout. With auto-payout enabled a pending payout is transferred right
        away; a payout with `hold_until` starts on_hold and waits for release.
        """
        account = await self.accounts.require_verified(vendor_id)

        if order_id or payment_id:
            existing = await self.payouts.find_by_claim(order_id, payment_id)
            if existing:
                logger.info("PAYOUT_DUPLICATE order=%s payment=%s payout=%s", order_id, payment_id, existing.id)
                return existing

        result = split(
            gross_amount,
            account.commission_percentage,
            account.withholding_applicable,
            has_tax_id=account.has_tax_id,
        )

        now = self._clock()
        payout = Payout(
            id=uuid.uuid4().hex,
            vendor_id=vendor_id,
            order_id=order_id,
            payment_id=payment_id,
            remittance_id=remittance_id,
            payout_type=payout_type,
            gross_amount=result.gross_amount,
            commission_percentage=account.commission_percentage,
            commission_amount=result.commission_amount,
            tax_amount=result.tax_amount,
            net_payout=result.net_amount,
            currency=CURRENCY,
            destination_account_id=account.destination_account_id,
            status=PayoutStatus.ON_HOLD if hold_until else PayoutStatus.PENDING,
            max_retries=self.max_retries,
            hold_until=hold_until,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )

        if order_id or payment_id:
            existing = await self.payouts.claim(payout)
            if existing:
                logger.info("PAYOUT_DUPLICATE order=%s payment=%s payout=%s", order_id, payment_id, existing.id)
                return existing

        await self.payouts.save(payout)
        await self.audit.log(vendor_id, "system", "PAYOUT_CREATED", {
            "payout_id": payout.id,
            "order_id": order_id,
            "payment_id": payment_id,
            "gross_amount": payout.gross_amount,
            "net_payout": payout.net_payout,
            "status": payout.status.value,
        })
        logger.info(
            "PAYOUT_CREATED payout=%s vendor=%s gross=%s net=%s status=%s",
            payout.id,
            vendor_id,
            payout.gross_amount,
            payout.net_payout,
            payout.status.value,
        )

        if payout.status == PayoutStatus.PENDING and account.auto_payout_enabled:
            return await self.initiate_transfer(payout.id)
        return payout

    # =====================================================
    # TRANSFER
    # =====================================================

    async def initiate_transfer(self, payout_id: str) -> Payout:
        """
        Submit a pending payout's net amount to the gateway.

        Success moves the payout to processing. Any gateway failure, timeout or
        network error moves it to failed and hands it to the retry scheduler;
        the failed payout is returned, not raised.
        """
        payout = await self.get_payout(payout_id)
        if payout.status != PayoutStatus.PENDING:
            raise PayoutStateError(f"Payout {payout_id} is {payout.status.value}, not pending")
        _refuse_if_blocked(payout)

        if not await self.payouts.acquire_transfer_lock(payout_id, TRANSFER_LOCK_SECONDS):
            raise PayoutStateError(f"Payout {payout_id} already has a transfer in flight")

        try:
            # re-read under the lock
            payout = await self.get_payout(payout_id)
            if payout.status != PayoutStatus.PENDING:
                raise PayoutStateError(f"Payout {payout_id} is {payout.status.value}, not pending")
            _refuse_if_blocked(payout)

            account = await self.accounts.require_verified(payout.vendor_id)
            destination = payout.destination_account_id or account.destination_account_id

            payout.initiated_at = self._clock()
            try:
                transfer = await self.gateway.create_transfer(
                    account_id=destination,
                    amount=payout.net_payout,
                    notes={
                        "payout_id": payout.id,
                        "order_id": payout.order_id or "",
                        "vendor_id": payout.vendor_id,
                    },
                )
            except GatewayError as e:
                return await self._record_transfer_failure(payout, e)
            except (OSError, asyncio.TimeoutError) as e:
                return await self._record_transfer_failure(
                    payout,
                    GatewayError("NETWORK_ERROR", str(e) or e.__class__.__name__, source="network"),
                )

            transition(payout, PayoutStatus.PROCESSING)
            payout.transfer_reference = transfer["id"]
            payout.destination_account_id = destination
            payout.processed_at = self._clock()
            payout.error_message = None
            payout.error_details = None
            payout.next_retry_at = None
            payout.updated_at = self._clock()
            await self.payouts.save(payout)

            logger.info(
                "PAYOUT_TRANSFER_INITIATED payout=%s transfer=%s amount=%s",
                payout.id,
                payout.transfer_reference,
                payout.net_payout,
            )
            return payout
        finally:
            await self.payouts.release_transfer_lock(payout_id)

    async def _record_transfer_failure(self, payout: Payout, err: GatewayError) -> Payout:
        transition(payout, PayoutStatus.FAILED)
        payout.failed_at = self._clock()
        payout.error_message = err.description
        payout.error_details = PayoutErrorDetail(**err.to_detail())
        payout.updated_at = self._clock()
        await self.payouts.save(payout)

        logger.warning(
            "PAYOUT_TRANSFER_FAILED payout=%s code=%s description=%s retry_count=%s",
            payout.id,
            err.code,
            err.description,
            payout.retry_count,
        )
        return await self.scheduler.schedule_retry(payout)

    async def retry_payout(self, payout_id: str) -> Payout:
        payout = await self.get_payout(payout_id)
        if payout.status != PayoutStatus.FAILED:
            raise PayoutStateError("Only failed payouts can be retried")
        _refuse_if_blocked(payout)
        if payout.retry_count >= payout.max_retries:
            raise RetryBudgetExhausted(f"Payout {payout_id} reached {payout.max_retries} retries")

        # fail fast while the payout is still failed
        await self.accounts.require_verified(payout.vendor_id)

        payout.retry_count += 1
        transition(payout, PayoutStatus.PENDING)
        payout.next_retry_at = None
        payout.updated_at = self._clock()
        await self.payouts.save(payout)
        await self.scheduler.clear(payout.id)

        logger.info("PAYOUT_RETRY payout=%s attempt=%s/%s", payout.id, payout.retry_count, payout.max_retries)
        return await self.initiate_transfer(payout.id)

    # =====================================================
    # GATEWAY OUTCOMES
    # =====================================================

    async def complete_transfer(self, payout: Payout) -> bool:
        if payout.status == PayoutStatus.COMPLETED:
            return False

        transition(payout, PayoutStatus.COMPLETED)
        payout.completed_at = self._clock()
        payout.updated_at = self._clock()
        await self.notifier.notify_vendor(payout, VendorNotificationKind.PAYOUT_COMPLETED)
        await self.payouts.save(payout)
        await self.scheduler.clear(payout.id)
        await self.audit.log(payout.vendor_id, "system", "PAYOUT_COMPLETED", {
            "payout_id": payout.id,
            "transfer_reference": payout.transfer_reference,
        })
        logger.info("PAYOUT_COMPLETED payout=%s transfer=%s", payout.id, payout.transfer_reference)
        return True

    async def fail_transfer(self, payout: Payout, detail: PayoutErrorDetail) -> bool:
        if payout.status == PayoutStatus.FAILED:
            return False

        transition(payout, PayoutStatus.FAILED)
        payout.failed_at = self._clock()
        payout.error_message = detail.description or "Transfer failed"
        payout.error_details = detail
        payout.updated_at = self._clock()
        await self.payouts.save(payout)
        logger.warning("PAYOUT_TRANSFER_FAILED payout=%s code=%s", payout.id, detail.code)
        await self.scheduler.schedule_retry(payout)
        return True

    async def block_retries(
        self,
        payout: Payout,
        reason: str,
        *,
        transfer_reference: Optional[str] = None,
    ) -> Payout:
        """
        Stop every further transfer attempt for `payout`.

        Used when the gateway reports money moving (or a refund landing) for a
        payout that is not processing. The payout keeps its status; an admin
        settles it by hand.
        """
        if transfer_reference and not payout.transfer_reference:
            payout.transfer_reference = transfer_reference
        payout.retry_blocked_reason = reason
        payout.next_retry_at = None
        payout.updated_at = self._clock()
        await self.payouts.save(payout)
        await self.scheduler.clear(payout.id)
        await self.audit.log(payout.vendor_id, "system", "PAYOUT_RETRIES_BLOCKED", {
            "payout_id": payout.id,
            "reason": reason,
            "status": payout.status.value,
            "transfer_reference": payout.transfer_reference,
        })
        logger.warning("PAYOUT_RETRIES_BLOCKED payout=%s status=%s reason=%s", payout.id, payout.status.value, reason)
        return payout

    # =====================================================
    # HOLDS
    # =====================================================

    async def release_payout(
        self,
        payout_id: str,
        trigger: ReleaseTrigger = ReleaseTrigger.MANUAL,
        *,
        actor_id: Optional[str] = None,
    ) -> Payout:
        payout = await self.get_payout(payout_id)
        if payout.status != PayoutStatus.ON_HOLD:
            raise PayoutStateError(f"Payout {payout_id} is {payout.status.value}, not on hold")

        transition(payout, PayoutStatus.PENDING)
        payout.release_trigger = trigger
        payout.released_at = self._clock()
        payout.updated_at = self._clock()
        await self.payouts.save(payout)
        await self.audit.log(actor_id, "admin" if actor_id else "system", "PAYOUT_RELEASED", {
            "payout_id": payout.id,
            "trigger": trigger.value,
        })
        logger.info("PAYOUT_RELEASED payout=%s trigger=%s", payout.id, trigger.value)

        account = await self.accounts.repo.get(payout.vendor_id)
        if account and account.status == VendorAccountStatus.VERIFIED and account.auto_payout_enabled:
            return await self.initiate_transfer(payout.id)
        return payout

    async def release_order_payouts(self, order_id: str, trigger: ReleaseTrigger) -> list[Payout]:
        released = []
        for payout in await self.payouts.find_by_order(order_id):
            if payout.status != PayoutStatus.ON_HOLD:
                continue
            try:
                released.append(await self.release_payout(payout.id, trigger))
            except PayoutStateError as e:
                logger.warning("PAYOUT_RELEASE_SKIPPED payout=%s error=%s", payout.id, e)
        return released

    async def release_expired_holds(self) -> list[Payout]:
        now = self._clock()
        released = []
        for payout_id in sorted(await self.payouts.held_payout_ids()):
            payout = await self.payouts.get(payout_id)
            if not payout or payout.status != PayoutStatus.ON_HOLD:
                continue
            if payout.hold_until is None or payout.hold_until > now:
                continue
            try:
                released.append(await self.release_payout(payout.id, ReleaseTrigger.HOLD_EXPIRED))
            except PayoutStateError as e:
                logger.warning("PAYOUT_RELEASE_SKIPPED payout=%s error=%s", payout.id, e)
        return released

    # =====================================================
    # REVERSAL
    # =====================================================

    async def reverse_payout(self, payout_id: str, reason: str, *, actor_id: Optional[str] = None) -> Payout:
        """
        Claw back a completed or held payout.

        Reversing an already reversed payout is a no-op. The gateway is asked
        for a reversal only when a transfer exists; a gateway error leaves the
        payout untouched and propagates.
        """
        payout = await self.get_payout(payout_id)
        if payout.status == PayoutStatus.REVERSED:
            logger.info("PAYOUT_ALREADY_REVERSED payout=%s", payout.id)
            return payout
        if payout.status not in REVERSIBLE_STATES:
            raise PayoutStateError(f"Payout {payout_id} is {payout.status.value} and cannot be reversed")

        if not await self.payouts.acquire_transfer_lock(payout_id, TRANSFER_LOCK_SECONDS):
            raise PayoutStateError(f"Payout {payout_id} already has a gateway operation in flight")

        try:
            payout = await self.get_payout(payout_id)
            if payout.status == PayoutStatus.REVERSED:
                return payout

            if payout.transfer_reference:
                reversal = await self.gateway.reverse_transfer(payout.transfer_reference, payout.net_payout)
                payout.metadata = {**payout.metadata, "reversal_id": reversal.get("id")}

            transition(payout, PayoutStatus.REVERSED)
            payout.reversal_reason = reason
            payout.reversed_at = self._clock()
            payout.updated_at = self._clock()
            await self.payouts.save(payout)
            await self.scheduler.clear(payout.id)
        finally:
            await self.payouts.release_transfer_lock(payout_id)

        await self.audit.log(actor_id, "admin" if actor_id else "system", "PAYOUT_REVERSED", {
            "payout_id": payout.id,
            "reason": reason,
            "transfer_reference": payout.transfer_reference,
        })
        logger.info("PAYOUT_REVERSED payout=%s reason=%s", payout.id, reason)
        return payout
