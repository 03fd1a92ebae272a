import asyncio
from decimal import Decimal

import pytest

from models.vendor_account import VendorAccountStatus
from utils.errors import (
    AccountExists,
    AccountNotEligible,
    AccountNotFound,
    AccountStateError,
    InvalidSplitInput,
)


class TestOnboarding:
    def test_new_account_is_pending_with_defaults(self, settlement):
        account = asyncio.run(settlement.accounts.onboard("vendor_1", "acc_1"))
        assert account.status == VendorAccountStatus.PENDING
        assert account.commission_percentage == Decimal("10")
        assert account.auto_payout_enabled is True

    def test_destination_required(self, settlement):
        with pytest.raises(AccountStateError):
            asyncio.run(settlement.accounts.onboard("vendor_1", "  "))

    def test_duplicate_rejected(self, settlement):
        async def scenario():
            await settlement.accounts.onboard("vendor_1", "acc_1")
            await settlement.accounts.onboard("vendor_1", "acc_2")

        with pytest.raises(AccountExists):
            asyncio.run(scenario())

    def test_commission_out_of_range(self, settlement):
        with pytest.raises(InvalidSplitInput):
            asyncio.run(settlement.accounts.onboard("vendor_1", "acc_1", commission_percentage=120))

    def test_reonboard_after_rejection_archives_old_record(self, settlement):
        async def scenario():
            first = await settlement.accounts.onboard("vendor_1", "acc_old")
            await settlement.accounts.submit_for_review("vendor_1")
            await settlement.accounts.reject("vendor_1", "ops_1", "name mismatch")
            second = await settlement.accounts.onboard("vendor_1", "acc_new")
            history = await settlement.accounts.history("vendor_1")
            return first, second, history

        first, second, history = asyncio.run(scenario())
        assert second.id != first.id
        assert second.status == VendorAccountStatus.PENDING
        assert [a.id for a in history] == [first.id]
        assert history[0].rejection_reason == "name mismatch"

    def test_get_unknown(self, settlement):
        with pytest.raises(AccountNotFound):
            asyncio.run(settlement.accounts.get("ghost"))


class TestLifecycle:
    def test_approve_verifies(self, settlement, verified_vendor):
        account = asyncio.run(verified_vendor("vendor_1"))
        assert account.status == VendorAccountStatus.VERIFIED
        assert account.reviewed_by == "ops_1"
        assert account.verified_at is not None

    def test_approve_requires_review(self, settlement):
        async def scenario():
            await settlement.accounts.onboard("vendor_1", "acc_1")
            await settlement.accounts.approve("vendor_1", "ops_1")

        with pytest.raises(AccountStateError):
            asyncio.run(scenario())

    def test_pending_account_not_eligible(self, settlement):
        async def scenario():
            await settlement.accounts.onboard("vendor_1", "acc_1")
            await settlement.accounts.require_verified("vendor_1")

        with pytest.raises(AccountNotEligible):
            asyncio.run(scenario())

    def test_missing_account_not_eligible(self, settlement):
        with pytest.raises(AccountNotEligible):
            asyncio.run(settlement.accounts.require_verified("ghost"))

    def test_suspend_and_reinstate_needs_new_approval(self, settlement, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            suspended = await settlement.accounts.suspend("vendor_1", "ops_2", "chargebacks")
            reinstated = await settlement.accounts.reinstate("vendor_1", "ops_2")
            return suspended, reinstated

        suspended, reinstated = asyncio.run(scenario())
        assert suspended.status == VendorAccountStatus.SUSPENDED
        assert suspended.suspension_reason == "chargebacks"
        assert reinstated.status == VendorAccountStatus.UNDER_REVIEW
        assert reinstated.suspended_at is None

    def test_cannot_suspend_rejected(self, settlement):
        async def scenario():
            await settlement.accounts.onboard("vendor_1", "acc_1")
            await settlement.accounts.submit_for_review("vendor_1")
            await settlement.accounts.reject("vendor_1", "ops_1", "bad docs")
            await settlement.accounts.suspend("vendor_1", "ops_1", "again")

        with pytest.raises(AccountStateError):
            asyncio.run(scenario())

    def test_list_by_status(self, settlement, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.accounts.onboard("vendor_2", "acc_2")
            return await settlement.accounts.list_accounts(VendorAccountStatus.VERIFIED)

        assert [a.vendor_id for a in asyncio.run(scenario())] == ["vendor_1"]


class TestSettings:
    def test_update_commission(self, settlement, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            return await settlement.accounts.update_commission("vendor_1", "7.5", "ops_1")

        assert asyncio.run(scenario()).commission_percentage == Decimal("7.5")

    def test_set_auto_payout(self, settlement, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            return await settlement.accounts.set_auto_payout("vendor_1", False, "ops_1")

        assert asyncio.run(scenario()).auto_payout_enabled is False

    def test_operator_actions_are_audited(self, settlement, verified_vendor):
        async def scenario():
            await verified_vendor("vendor_1")
            await settlement.accounts.update_commission("vendor_1", 12, "ops_1")
            return await settlement.audit.recent()

        actions = [entry["action"] for entry in asyncio.run(scenario())]
        assert "ACCOUNT_ONBOARDED" in actions
        assert "ACCOUNT_APPROVED" in actions
        assert "ACCOUNT_COMMISSION_UPDATED" in actions
