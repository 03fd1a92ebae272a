"""
Composition root: every settlement component is built once here and handed
its collaborators explicitly.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Request

from config import env
from utils.audit import AuditLog
from utils.cod import CODService
from utils.gateway import InMemoryGateway, PaymentGateway
from utils.notifications import Notifier
from utils.payments import PaymentService
from utils.payout_reports import PayoutReports
from utils.payout_schedules import PayoutScheduleService
from utils.razorpay import RazorpayGateway
from utils.repositories import (
    AdminAlertRepository,
    AuditLogRepository,
    OrderRepository,
    PaymentRepository,
    PayoutRepository,
    PayoutScheduleRepository,
    RemittanceRepository,
    RetryQueueRepository,
    RiskProfileRepository,
    ServiceabilityRepository,
    VendorAccountRepository,
    VendorNotificationRepository,
    WebhookEventRepository,
)
from utils.retry_scheduler import RetryScheduler
from utils.risk import CustomerRiskScorer
from utils.store import KeyedStore
from utils.transfers import TransferOrchestrator
from utils.vendor_accounts import VendorAccountService
from utils.webhooks import WebhookReconciler


@dataclass
class Settlement:
    store: KeyedStore
    gateway: PaymentGateway
    audit: AuditLog
    notifier: Notifier
    accounts: VendorAccountService
    scheduler: RetryScheduler
    orchestrator: TransferOrchestrator
    reports: PayoutReports
    payments: PaymentService
    scorer: CustomerRiskScorer
    cod: CODService
    reconciler: WebhookReconciler
    schedules: PayoutScheduleService
    admin_api_key: Optional[str] = None
    delivery_webhook_secret: Optional[str] = None
    logistics_webhook_secret: Optional[str] = None

    async def run_due_retries(self) -> dict:
        return await self.scheduler.process_due_retries(self.orchestrator.retry_payout)

    async def release_expired_holds(self) -> list:
        return await self.orchestrator.release_expired_holds()

    async def run_scheduled_payouts(self) -> dict:
        return await self.schedules.process_scheduled_payouts()


def create_gateway() -> PaymentGateway:
    if env.PAYMENT_GATEWAY == "sandbox":
        return InMemoryGateway()
    if env.PAYMENT_GATEWAY == "razorpay":
        return RazorpayGateway(
            key_id=env.RAZORPAY_KEY_ID,
            key_secret=env.RAZORPAY_KEY_SECRET,
            webhook_secret=env.RAZORPAY_WEBHOOK_SECRET,
            timeout=env.GATEWAY_TIMEOUT_SECONDS,
        )
    raise RuntimeError(f"Unsupported PAYMENT_GATEWAY {env.PAYMENT_GATEWAY}")


def build_settlement(
    store: KeyedStore,
    gateway: PaymentGateway,
    *,
    clock=datetime.utcnow,
    max_retries: int = env.PAYOUT_MAX_RETRIES,
    hold_until_delivery_days: int = env.HOLD_UNTIL_DELIVERY_DAYS,
    webhook_retention_days: int = env.WEBHOOK_EVENT_RETENTION_DAYS,
    risk_cache_seconds: int = env.RISK_PROFILE_CACHE_SECONDS,
    pincode_cache_seconds: int = env.PINCODE_CACHE_SECONDS,
    serviceable_pincodes: Optional[list[str]] = None,
    accept_any_valid_pincode: bool = env.COD_ACCEPT_ANY_VALID_PINCODE,
    admin_api_key: Optional[str] = env.ADMIN_API_KEY,
    delivery_webhook_secret: Optional[str] = env.DELIVERY_WEBHOOK_SECRET,
    logistics_webhook_secret: Optional[str] = env.LOGISTICS_WEBHOOK_SECRET,
) -> Settlement:
    payouts = PayoutRepository(store)
    orders = OrderRepository(store)
    alerts = AdminAlertRepository(store)

    audit = AuditLog(AuditLogRepository(store), clock=clock)
    notifier = Notifier(alerts, VendorNotificationRepository(store), clock=clock)
    accounts = VendorAccountService(VendorAccountRepository(store), audit, clock=clock)
    scheduler = RetryScheduler(payouts, RetryQueueRepository(store), notifier, clock=clock)

    orchestrator = TransferOrchestrator(
        payouts=payouts,
        accounts=accounts,
        gateway=gateway,
        scheduler=scheduler,
        notifier=notifier,
        audit=audit,
        max_retries=max_retries,
        clock=clock,
    )
    payments = PaymentService(
        orders=orders,
        payments=PaymentRepository(store),
        gateway=gateway,
        orchestrator=orchestrator,
        audit=audit,
        hold_until_delivery_days=hold_until_delivery_days,
        clock=clock,
    )
    scorer = CustomerRiskScorer(RiskProfileRepository(store), cache_seconds=risk_cache_seconds, clock=clock)
    cod = CODService(
        remittances=RemittanceRepository(store),
        orders=orders,
        serviceability=ServiceabilityRepository(store),
        scorer=scorer,
        orchestrator=orchestrator,
        notifier=notifier,
        audit=audit,
        serviceable_pincodes=serviceable_pincodes if serviceable_pincodes is not None else env.COD_SERVICEABLE_PINCODES,
        accept_any_valid_pincode=accept_any_valid_pincode,
        pincode_cache_seconds=pincode_cache_seconds,
        clock=clock,
    )
    reconciler = WebhookReconciler(
        events=WebhookEventRepository(store),
        payments=payments,
        orchestrator=orchestrator,
        payouts=payouts,
        orders=orders,
        cod=cod,
        scorer=scorer,
        notifier=notifier,
        retention_days=webhook_retention_days,
        clock=clock,
    )

    return Settlement(
        store=store,
        gateway=gateway,
        audit=audit,
        notifier=notifier,
        accounts=accounts,
        scheduler=scheduler,
        orchestrator=orchestrator,
        reports=PayoutReports(payouts, alerts),
        payments=payments,
        scorer=scorer,
        cod=cod,
        reconciler=reconciler,
        schedules=PayoutScheduleService(
            schedules=PayoutScheduleRepository(store),
            payouts=payouts,
            accounts=accounts,
            orchestrator=orchestrator,
            audit=audit,
            clock=clock,
        ),
        admin_api_key=admin_api_key,
        delivery_webhook_secret=delivery_webhook_secret,
        logistics_webhook_secret=logistics_webhook_secret,
    )


def get_settlement(request: Request) -> Settlement:
    return request.app.state.settlement
