from datetime import datetime, timedelta

import pytest

from settlement import build_settlement
from utils.gateway import InMemoryGateway
from utils.store import InMemoryKeyedStore

ADMIN_KEY = "test-admin-key"
DELIVERY_SECRET = "test-delivery-secret"
LOGISTICS_SECRET = "test-logistics-secret"


class FakeClock:
    """Hand-driven clock shared by the store and every service."""

    def __init__(self, start: datetime = datetime(2026, 1, 5, 9, 30)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryKeyedStore(clock=clock)


@pytest.fixture
def gateway():
    return InMemoryGateway()


@pytest.fixture
def settlement(store, gateway, clock):
    return build_settlement(
        store,
        gateway,
        clock=clock,
        max_retries=5,
        hold_until_delivery_days=7,
        webhook_retention_days=7,
        risk_cache_seconds=3600,
        pincode_cache_seconds=86400,
        serviceable_pincodes=["400001", "110001", "560001"],
        accept_any_valid_pincode=False,
        admin_api_key=ADMIN_KEY,
        delivery_webhook_secret=DELIVERY_SECRET,
        logistics_webhook_secret=LOGISTICS_SECRET,
    )


@pytest.fixture
def verified_vendor(settlement):
    """Async factory: onboard a vendor and walk it to verified."""

    async def _make(vendor_id: str = "vendor_1", **overrides):
        defaults = {
            "destination_account_id": f"acc_{vendor_id}",
            "withholding_applicable": False,
        }
        defaults.update(overrides)
        destination = defaults.pop("destination_account_id")
        await settlement.accounts.onboard(vendor_id, destination, **defaults)
        await settlement.accounts.submit_for_review(vendor_id)
        return await settlement.accounts.approve(vendor_id, "ops_1")

    return _make
