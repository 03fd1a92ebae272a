import logging
import uuid
from datetime import datetime
from typing import Optional

from config.constants import DEFAULT_COMMISSION_PERCENTAGE
from models.vendor_account import VendorAccountStatus, VendorSettlementAccount
from utils.audit import AuditLog
from utils.errors import (
    AccountExists,
    AccountNotEligible,
    AccountNotFound,
    AccountStateError,
)
from utils.repositories import VendorAccountRepository
from utils.split import normalize_percentage

logger = logging.getLogger(__name__)

SUSPENDABLE = {
    VendorAccountStatus.PENDING,
    VendorAccountStatus.UNDER_REVIEW,
    VendorAccountStatus.VERIFIED,
}


class VendorAccountService:
    """
    Vendor settlement account lifecycle.

    pending -> under_review -> verified | rejected
    verified | pending | under_review -> suspended -> under_review (reinstate)

    Accounts are never deleted. A rejected account is archived when the vendor
    onboards again.
    """

    def __init__(self, repo: VendorAccountRepository, audit: AuditLog, clock=datetime.utcnow):
        self.repo = repo
        self.audit = audit
        self._clock = clock

    async def onboard(
        self,
        vendor_id: str,
        destination_account_id: str,
        *,
        commission_percentage=None,
        auto_payout_enabled: bool = True,
        tax_id: Optional[str] = None,
        withholding_applicable: bool = True,
        business_name: Optional[str] = None,
        contact_email: Optional[str] = None,
    ) -> VendorSettlementAccount:
        if not (destination_account_id or "").strip():
            raise AccountStateError("destination_account_id is required")

        pct = DEFAULT_COMMISSION_PERCENTAGE
        if commission_percentage is not None:
            pct = normalize_percentage(commission_percentage)

        existing = await self.repo.get(vendor_id)
        if existing:
            if existing.status != VendorAccountStatus.REJECTED:
                raise AccountExists(f"Settlement account already exists for vendor {vendor_id}")
            await self.repo.archive(existing)
            logger.info("VENDOR_ACCOUNT_ARCHIVED vendor=%s account=%s", vendor_id, existing.id)

        now = self._clock()
        account = VendorSettlementAccount(
            id=uuid.uuid4().hex,
            vendor_id=vendor_id,
            destination_account_id=destination_account_id.strip(),
            commission_percentage=pct,
            auto_payout_enabled=auto_payout_enabled,
            tax_id=tax_id,
            withholding_applicable=withholding_applicable,
            business_name=business_name,
            contact_email=contact_email,
            created_at=now,
            updated_at=now,
        )
        if not await self.repo.create(account):
            raise AccountExists(f"Settlement account already exists for vendor {vendor_id}")

        await self.audit.log(vendor_id, "vendor", "ACCOUNT_ONBOARDED", {"account_id": account.id})
        logger.info("VENDOR_ACCOUNT_ONBOARDED vendor=%s account=%s", vendor_id, account.id)
        return account

    async def get(self, vendor_id: str) -> VendorSettlementAccount:
        account = await self.repo.get(vendor_id)
        if not account:
            raise AccountNotFound(f"No settlement account for vendor {vendor_id}")
        return account

    async def list_accounts(self, status: Optional[VendorAccountStatus] = None) -> list[VendorSettlementAccount]:
        accounts = await self.repo.list_all()
        if status is not None:
            accounts = [a for a in accounts if a.status == status]
        return accounts

    async def history(self, vendor_id: str) -> list[VendorSettlementAccount]:
        return await self.repo.history(vendor_id)

    async def require_verified(self, vendor_id: str) -> VendorSettlementAccount:
        account = await self.repo.get(vendor_id)
        if not account:
            raise AccountNotEligible(f"Vendor {vendor_id} has no settlement account")
        if account.status != VendorAccountStatus.VERIFIED:
            raise AccountNotEligible(
                f"Vendor {vendor_id} settlement account is {account.status.value}, not verified"
            )
        return account

    # ---- status transitions ----------------------------------------

    async def _move(
        self,
        vendor_id: str,
        allowed_from: set[VendorAccountStatus],
        target: VendorAccountStatus,
    ) -> VendorSettlementAccount:
        account = await self.get(vendor_id)
        if account.status not in allowed_from:
            raise AccountStateError(
                f"Cannot move account from {account.status.value} to {target.value}"
            )
        account.status = target
        account.updated_at = self._clock()
        return account

    async def submit_for_review(self, vendor_id: str) -> VendorSettlementAccount:
        account = await self._move(vendor_id, {VendorAccountStatus.PENDING}, VendorAccountStatus.UNDER_REVIEW)
        await self.repo.save(account)
        await self.audit.log(vendor_id, "vendor", "ACCOUNT_SUBMITTED", {"account_id": account.id})
        return account

    async def approve(self, vendor_id: str, operator_id: str, notes: Optional[str] = None) -> VendorSettlementAccount:
        account = await self._move(vendor_id, {VendorAccountStatus.UNDER_REVIEW}, VendorAccountStatus.VERIFIED)
        account.reviewed_by = operator_id
        account.verified_at = account.updated_at
        account.verification_notes = notes
        await self.repo.save(account)
        await self.audit.log(operator_id, "admin", "ACCOUNT_APPROVED", {"vendor_id": vendor_id, "notes": notes})
        logger.info("VENDOR_ACCOUNT_APPROVED vendor=%s operator=%s", vendor_id, operator_id)
        return account

    async def reject(self, vendor_id: str, operator_id: str, reason: str) -> VendorSettlementAccount:
        account = await self._move(vendor_id, {VendorAccountStatus.UNDER_REVIEW}, VendorAccountStatus.REJECTED)
        account.reviewed_by = operator_id
        account.rejection_reason = reason
        await self.repo.save(account)
        await self.audit.log(operator_id, "admin", "ACCOUNT_REJECTED", {"vendor_id": vendor_id, "reason": reason})
        logger.info("VENDOR_ACCOUNT_REJECTED vendor=%s operator=%s", vendor_id, operator_id)
        return account

    async def suspend(self, vendor_id: str, operator_id: str, reason: str) -> VendorSettlementAccount:
        account = await self._move(vendor_id, SUSPENDABLE, VendorAccountStatus.SUSPENDED)
        account.suspended_at = account.updated_at
        account.suspension_reason = reason
        await self.repo.save(account)
        await self.audit.log(operator_id, "admin", "ACCOUNT_SUSPENDED", {"vendor_id": vendor_id, "reason": reason})
        logger.warning("VENDOR_ACCOUNT_SUSPENDED vendor=%s operator=%s reason=%s", vendor_id, operator_id, reason)
        return account

    async def reinstate(self, vendor_id: str, operator_id: str) -> VendorSettlementAccount:
        # back to review, an operator has to approve again
        account = await self._move(vendor_id, {VendorAccountStatus.SUSPENDED}, VendorAccountStatus.UNDER_REVIEW)
        account.suspended_at = None
        account.suspension_reason = None
        await self.repo.save(account)
        await self.audit.log(operator_id, "admin", "ACCOUNT_REINSTATED", {"vendor_id": vendor_id})
        return account

    # ---- settings --------------------------------------------------

    async def update_commission(self, vendor_id: str, commission_percentage, operator_id: str) -> VendorSettlementAccount:
        pct = normalize_percentage(commission_percentage)
        account = await self.get(vendor_id)
        previous = account.commission_percentage
        account.commission_percentage = pct
        account.updated_at = self._clock()
        await self.repo.save(account)
        await self.audit.log(operator_id, "admin", "ACCOUNT_COMMISSION_UPDATED", {
            "vendor_id": vendor_id,
            "from": str(previous),
            "to": str(pct),
        })
        return account

    async def set_auto_payout(self, vendor_id: str, enabled: bool, operator_id: str) -> VendorSettlementAccount:
        account = await self.get(vendor_id)
        account.auto_payout_enabled = enabled
        account.updated_at = self._clock()
        await self.repo.save(account)
        await self.audit.log(operator_id, "admin", "ACCOUNT_AUTO_PAYOUT_UPDATED", {
            "vendor_id": vendor_id,
            "enabled": enabled,
        })
        return account
