"""
Entity repositories over a KeyedStore.

Every key the settlement layer writes is built here; callers only see
entity-level methods.
"""
from __future__ import annotations

from typing import Optional

from models.alert import AdminAlert, VendorNotification
from models.cod import CODRemittance, CustomerRiskProfile
from models.payment import OrderRecord, PaymentRecord
from models.payout import Payout, PayoutStatus
from models.payout_schedule import PayoutSchedule
from models.vendor_account import VendorSettlementAccount
from models.webhook import WebhookEventRecord
from utils.store import KeyedStore, keys_suffixes


class _Repository:
    def __init__(self, store: KeyedStore):
        self.store = store


# =====================================================
# VENDOR ACCOUNTS
# =====================================================

class VendorAccountRepository(_Repository):
    PREFIX = "vendor_account:"
    ARCHIVE_PREFIX = "vendor_account_archive:"

    def _key(self, vendor_id: str) -> str:
        return f"{self.PREFIX}{vendor_id}"

    async def get(self, vendor_id: str) -> Optional[VendorSettlementAccount]:
        doc = await self.store.get(self._key(vendor_id))
        return VendorSettlementAccount(**doc) if doc else None

    async def create(self, account: VendorSettlementAccount) -> bool:
        return await self.store.set_if_absent(self._key(account.vendor_id), account.to_doc())

    async def save(self, account: VendorSettlementAccount) -> None:
        await self.store.set(self._key(account.vendor_id), account.to_doc())

    async def archive(self, account: VendorSettlementAccount) -> None:
        await self.store.set(f"{self.ARCHIVE_PREFIX}{account.vendor_id}:{account.id}", account.to_doc())
        await self.store.delete(self._key(account.vendor_id))

    async def history(self, vendor_id: str) -> list[VendorSettlementAccount]:
        keys = await self.store.scan(f"{self.ARCHIVE_PREFIX}{vendor_id}:*")
        docs = [await self.store.get(key) for key in keys]
        return [VendorSettlementAccount(**doc) for doc in docs if doc]

    async def list_all(self) -> list[VendorSettlementAccount]:
        keys = await self.store.scan(f"{self.PREFIX}*")
        docs = [await self.store.get(key) for key in keys]
        return [VendorSettlementAccount(**doc) for doc in docs if doc]


# =====================================================
# PAYOUTS
# =====================================================

class PayoutRepository(_Repository):
    PREFIX = "payout:"
    HELD_KEY = "payouts_on_hold"

    def _key(self, payout_id: str) -> str:
        return f"{self.PREFIX}{payout_id}"

    @staticmethod
    def _idempotency_key(order_id: Optional[str], payment_id: Optional[str]) -> str:
        return f"payout_idempotency:{order_id or '-'}:{payment_id or '-'}"

    async def get(self, payout_id: str) -> Optional[Payout]:
        doc = await self.store.get(self._key(payout_id))
        return Payout(**doc) if doc else None

    async def claim(self, payout: Payout) -> Optional[Payout]:
        """
        Atomically reserve (order_id, payment_id) for `payout`.

        Returns None when the reservation is ours, otherwise the payout that
        already owns it.
        """
        key = self._idempotency_key(payout.order_id, payout.payment_id)
        won = await self.store.set_if_absent(key, {"payout_id": payout.id, "payout": payout.to_doc()})
        if won:
            return None

        claim = await self.store.get(key) or {}
        existing = await self.get(claim.get("payout_id", ""))
        if existing:
            return existing
        if not claim.get("payout"):
            return None

        # claim holder has not persisted its record yet; store the claimed
        # snapshot so the id handed back always resolves
        claimed = Payout(**claim["payout"])
        if await self.store.set_if_absent(self._key(claimed.id), claimed.to_doc()):
            await self._index(claimed)
        return await self.get(claimed.id)

    async def find_by_claim(self, order_id: Optional[str], payment_id: Optional[str]) -> Optional[Payout]:
        claim = await self.store.get(self._idempotency_key(order_id, payment_id))
        if not claim:
            return None
        return await self.get(claim["payout_id"])

    async def save(self, payout: Payout) -> None:
        await self.store.set(self._key(payout.id), payout.to_doc())
        await self._index(payout)

    async def _index(self, payout: Payout) -> None:
        await self.store.set(f"vendor_payout:{payout.vendor_id}:{payout.id}", payout.id)

        if payout.order_id:
            await self.store.sadd(f"order_payouts:{payout.order_id}", payout.id)
        if payout.transfer_reference:
            await self.store.set(f"transfer_ref:{payout.transfer_reference}", payout.id)

        if payout.status == PayoutStatus.ON_HOLD:
            await self.store.sadd(self.HELD_KEY, payout.id)
        else:
            await self.store.srem(self.HELD_KEY, payout.id)

    async def find_by_vendor(self, vendor_id: str) -> list[Payout]:
        prefix = f"vendor_payout:{vendor_id}:"
        ids = keys_suffixes(await self.store.scan(f"{prefix}*"), prefix)
        payouts = [await self.get(payout_id) for payout_id in ids]
        return sorted((p for p in payouts if p), key=lambda p: p.created_at)

    async def find_by_order(self, order_id: str) -> list[Payout]:
        ids = await self.store.smembers(f"order_payouts:{order_id}")
        payouts = [await self.get(payout_id) for payout_id in sorted(ids)]
        return [p for p in payouts if p]

    async def find_by_transfer_reference(self, transfer_reference: str) -> Optional[Payout]:
        payout_id = await self.store.get(f"transfer_ref:{transfer_reference}")
        return await self.get(payout_id) if payout_id else None

    async def held_payout_ids(self) -> set[str]:
        return await self.store.smembers(self.HELD_KEY)

    async def acquire_transfer_lock(self, payout_id: str, ttl: int) -> bool:
        return await self.store.set_if_absent(f"transfer_lock:{payout_id}", "locked", ttl=ttl)

    async def release_transfer_lock(self, payout_id: str) -> None:
        await self.store.delete(f"transfer_lock:{payout_id}")


class RetryQueueRepository(_Repository):
    QUEUE_KEY = "payout_retry_queue"

    async def schedule(self, payout_id: str, delay_seconds: int) -> None:
        await self.store.sadd(self.QUEUE_KEY, payout_id)
        # marker lives exactly as long as the backoff window
        await self.store.set(f"payout_retry_backoff:{payout_id}", "waiting", ttl=delay_seconds)

    async def queued(self) -> set[str]:
        return await self.store.smembers(self.QUEUE_KEY)

    async def backing_off(self, payout_id: str) -> bool:
        return await self.store.get(f"payout_retry_backoff:{payout_id}") is not None

    async def claim(self, payout_id: str, attempt: int, ttl: int) -> bool:
        return await self.store.set_if_absent(f"payout_retry_claim:{payout_id}:{attempt}", "claimed", ttl=ttl)

    async def remove(self, payout_id: str) -> None:
        await self.store.srem(self.QUEUE_KEY, payout_id)
        await self.store.delete(f"payout_retry_backoff:{payout_id}")


class PayoutScheduleRepository(_Repository):
    PREFIX = "payout_schedule:"

    async def get(self, vendor_id: str) -> Optional[PayoutSchedule]:
        doc = await self.store.get(f"{self.PREFIX}{vendor_id}")
        return PayoutSchedule(**doc) if doc else None

    async def save(self, schedule: PayoutSchedule) -> None:
        await self.store.set(f"{self.PREFIX}{schedule.vendor_id}", schedule.to_doc())

    async def list_all(self) -> list[PayoutSchedule]:
        docs = [await self.store.get(key) for key in await self.store.scan(f"{self.PREFIX}*")]
        return sorted((PayoutSchedule(**doc) for doc in docs if doc), key=lambda s: s.vendor_id)

    async def claim_run(self, vendor_id: str, due: str, ttl: int) -> bool:
        return await self.store.set_if_absent(f"payout_schedule_run:{vendor_id}:{due}", "claimed", ttl=ttl)


# =====================================================
# ALERTS / NOTIFICATIONS
# =====================================================

class AdminAlertRepository(_Repository):
    PREFIX = "admin_alert:"

    def _key(self, kind: str, entity_id: str) -> str:
        return f"{self.PREFIX}{kind}:{entity_id}"

    async def raise_once(self, alert: AdminAlert) -> bool:
        return await self.store.set_if_absent(self._key(alert.kind.value, alert.entity_id), alert.to_doc())

    async def get(self, kind: str, entity_id: str) -> Optional[AdminAlert]:
        doc = await self.store.get(self._key(kind, entity_id))
        return AdminAlert(**doc) if doc else None

    async def list(self, kind: Optional[str] = None) -> list[AdminAlert]:
        pattern = f"{self.PREFIX}{kind}:*" if kind else f"{self.PREFIX}*"
        docs = [await self.store.get(key) for key in await self.store.scan(pattern)]
        return sorted((AdminAlert(**doc) for doc in docs if doc), key=lambda a: a.created_at)


class VendorNotificationRepository(_Repository):
    PREFIX = "vendor_notification:"

    async def notify_once(self, notification: VendorNotification) -> bool:
        key = (
            f"{self.PREFIX}{notification.vendor_id}:"
            f"{notification.payout_id}:{notification.kind.value}"
        )
        return await self.store.set_if_absent(key, notification.to_doc())

    async def list_for_vendor(self, vendor_id: str) -> list[VendorNotification]:
        keys = await self.store.scan(f"{self.PREFIX}{vendor_id}:*")
        docs = [await self.store.get(key) for key in keys]
        return sorted((VendorNotification(**doc) for doc in docs if doc), key=lambda n: n.created_at)


# =====================================================
# WEBHOOK EVENTS
# =====================================================

class WebhookEventRepository(_Repository):
    PREFIX = "webhook_event:"

    async def record_received(self, record: WebhookEventRecord, ttl: int) -> bool:
        return await self.store.set_if_absent(f"{self.PREFIX}{record.key}", record.to_doc(), ttl=ttl)

    async def save(self, record: WebhookEventRecord, ttl: int) -> None:
        await self.store.set(f"{self.PREFIX}{record.key}", record.to_doc(), ttl=ttl)

    async def get(self, key: str) -> Optional[WebhookEventRecord]:
        doc = await self.store.get(f"{self.PREFIX}{key}")
        return WebhookEventRecord(**doc) if doc else None


# =====================================================
# ORDERS / PAYMENTS
# =====================================================

class OrderRepository(_Repository):
    PREFIX = "order:"

    async def get(self, order_id: str) -> Optional[OrderRecord]:
        doc = await self.store.get(f"{self.PREFIX}{order_id}")
        return OrderRecord(**doc) if doc else None

    async def save(self, order: OrderRecord) -> None:
        await self.store.set(f"{self.PREFIX}{order.order_id}", order.to_doc())
        if order.gateway_order_id:
            await self.store.set(f"gateway_order:{order.gateway_order_id}", order.order_id)
        if order.waybill:
            await self.store.set(f"waybill:{order.waybill}", order.order_id)

    async def find_by_gateway_order(self, gateway_order_id: str) -> Optional[OrderRecord]:
        order_id = await self.store.get(f"gateway_order:{gateway_order_id}")
        return await self.get(order_id) if order_id else None

    async def find_by_waybill(self, waybill: str) -> Optional[OrderRecord]:
        order_id = await self.store.get(f"waybill:{waybill}")
        return await self.get(order_id) if order_id else None


class PaymentRepository(_Repository):
    PREFIX = "payment:"

    async def get(self, payment_id: str) -> Optional[PaymentRecord]:
        doc = await self.store.get(f"{self.PREFIX}{payment_id}")
        return PaymentRecord(**doc) if doc else None

    async def save(self, payment: PaymentRecord) -> None:
        await self.store.set(f"{self.PREFIX}{payment.payment_id}", payment.to_doc())


# =====================================================
# COD
# =====================================================

class RemittanceRepository(_Repository):
    PREFIX = "cod_remittance:"

    async def get(self, remittance_id: str) -> Optional[CODRemittance]:
        doc = await self.store.get(f"{self.PREFIX}{remittance_id}")
        return CODRemittance(**doc) if doc else None

    async def save(self, remittance: CODRemittance) -> None:
        await self.store.set(f"{self.PREFIX}{remittance.id}", remittance.to_doc())

    async def claim_verified(self, order_id: str, remittance_id: str) -> Optional[str]:
        """Reserve the single verified remittance of an order; returns the holder when taken."""
        key = f"cod_verified_remittance:{order_id}"
        if await self.store.set_if_absent(key, remittance_id):
            return None
        return await self.store.get(key)

    async def list_all(self) -> list[CODRemittance]:
        keys = await self.store.scan(f"{self.PREFIX}*")
        docs = [await self.store.get(key) for key in keys]
        return [CODRemittance(**doc) for doc in docs if doc]


class RiskProfileRepository(_Repository):
    PREFIX = "risk_profile:"
    COUNTERS = ("total_orders", "successful_cod_orders", "failed_cod_orders", "returned_orders")

    async def get_cached(self, customer_id: str) -> Optional[CustomerRiskProfile]:
        doc = await self.store.get(f"{self.PREFIX}{customer_id}")
        return CustomerRiskProfile(**doc) if doc else None

    async def cache(self, profile: CustomerRiskProfile, ttl: int) -> None:
        await self.store.set(f"{self.PREFIX}{profile.customer_id}", profile.to_doc(), ttl=ttl)

    async def invalidate(self, customer_id: str) -> None:
        await self.store.delete(f"{self.PREFIX}{customer_id}")

    async def incr(self, customer_id: str, counter: str, amount: int = 1) -> int:
        if counter not in self.COUNTERS:
            raise ValueError(f"Unknown risk counter {counter}")
        return await self.store.incr(f"risk_counter:{customer_id}:{counter}", amount)

    async def counters(self, customer_id: str) -> dict[str, int]:
        result = {}
        for counter in self.COUNTERS:
            value = await self.store.get(f"risk_counter:{customer_id}:{counter}")
            result[counter] = int(value or 0)
        return result


class ServiceabilityRepository(_Repository):
    KEY = "cod_serviceable_pincodes"

    async def load(self, pincodes: list[str], ttl: int) -> None:
        if pincodes:
            await self.store.sadd(self.KEY, *pincodes)
            await self.store.expire(self.KEY, ttl)

    async def loaded(self) -> bool:
        return bool(await self.store.smembers(self.KEY))

    async def contains(self, pincode: str) -> bool:
        return pincode in await self.store.smembers(self.KEY)

    async def add(self, pincode: str) -> None:
        await self.store.sadd(self.KEY, pincode)


# =====================================================
# AUDIT
# =====================================================

class AuditLogRepository(_Repository):
    PREFIX = "audit:"

    async def append(self, entry_id: str, entry: dict, ttl: int) -> None:
        await self.store.set(f"{self.PREFIX}{entry_id}", entry, ttl=ttl)

    async def list(self, limit: int = 100) -> list[dict]:
        keys = await self.store.scan(f"{self.PREFIX}*")
        docs = [await self.store.get(key) for key in keys[-limit:]]
        return [doc for doc in docs if doc]
