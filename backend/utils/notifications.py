import logging
from datetime import datetime

from models.alert import (
    AdminAlert,
    AlertKind,
    VendorNotification,
    VendorNotificationKind,
)
from models.payout import Payout
from utils.repositories import AdminAlertRepository, VendorNotificationRepository

logger = logging.getLogger(__name__)


class Notifier:
    """Admin escalation queue and one-time vendor notifications."""

    def __init__(
        self,
        alerts: AdminAlertRepository,
        vendor_notifications: VendorNotificationRepository,
        clock=datetime.utcnow,
    ):
        self.alerts = alerts
        self.vendor_notifications = vendor_notifications
        self._clock = clock

    async def alert_admin(
        self,
        kind: AlertKind,
        entity_id: str,
        message: str,
        *,
        vendor_id: str | None = None,
        details: dict | None = None,
    ) -> bool:
        alert = AdminAlert(
            kind=kind,
            entity_id=entity_id,
            message=message,
            vendor_id=vendor_id,
            details=details or {},
            created_at=self._clock(),
        )
        raised = await self.alerts.raise_once(alert)
        if raised:
            logger.error("ADMIN_ALERT kind=%s entity=%s message=%s", kind.value, entity_id, message)
        return raised

    async def notify_vendor(self, payout: Payout, kind: VendorNotificationKind) -> bool:
        if kind == VendorNotificationKind.PAYOUT_COMPLETED:
            message = f"Payout of {payout.net_payout} paise has been settled"
        else:
            message = payout.error_message or "Payout could not be completed"

        sent = await self.vendor_notifications.notify_once(VendorNotification(
            vendor_id=payout.vendor_id,
            payout_id=payout.id,
            kind=kind,
            message=message,
            amount=payout.net_payout,
            created_at=self._clock(),
        ))
        if sent:
            payout.vendor_notified = True
            logger.info("VENDOR_NOTIFIED vendor=%s payout=%s kind=%s", payout.vendor_id, payout.id, kind.value)
        return sent
