import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request

from models.webhook import DeliveryUpdate
from settlement import Settlement, get_settlement
from utils.signatures import verify_hmac

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])
logger = logging.getLogger(__name__)


# =========================================================
# SIGNATURE VERIFICATION
# =========================================================

def verify_signature(secret: Optional[str], raw_body: bytes, received_signature: Optional[str]):
    if not received_signature:
        raise HTTPException(401, "Missing signature")

    try:
        valid = verify_hmac(secret, raw_body, received_signature)
    except RuntimeError:
        raise HTTPException(500, "Webhook secret not configured")

    if not valid:
        raise HTTPException(401, "Invalid webhook signature")


def _load_json(raw_body: bytes) -> dict:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(400, "Invalid JSON payload")

    if not isinstance(payload, dict):
        raise HTTPException(400, "Invalid JSON payload")
    return payload


# =========================================================
# RAZORPAY WEBHOOK
# =========================================================

@router.post("/razorpay")
async def razorpay_webhook(request: Request, settlement: Settlement = Depends(get_settlement)):
    """
    Payment gateway webhook.

    Every accepted delivery answers 200 once recorded, including duplicates
    and events whose handler failed (those raise an admin alert instead).
    """
    signature = request.headers.get("X-Razorpay-Signature")
    if not signature:
        raise HTTPException(401, "Missing signature")

    raw_body = await request.body()
    try:
        valid = settlement.gateway.verify_webhook_signature(raw_body=raw_body, signature=signature)
    except RuntimeError:
        raise HTTPException(500, "Webhook secret not configured")
    if not valid:
        logger.warning("WEBHOOK_SIGNATURE_REJECTED source=razorpay")
        raise HTTPException(401, "Invalid webhook signature")

    payload = _load_json(raw_body)
    outcome = await settlement.reconciler.handle(payload)
    return {"ok": True, **outcome}


# =========================================================
# DELIVERY WEBHOOK
# =========================================================

@router.post("/delivery")
async def delivery_webhook(request: Request, settlement: Settlement = Depends(get_settlement)):
    raw_body = await request.body()
    verify_signature(
        settlement.delivery_webhook_secret,
        raw_body,
        request.headers.get("X-Delivery-Signature"),
    )
    payload = _load_json(raw_body)

    waybill = payload.get("waybill")
    status = payload.get("status")
    if not waybill or not status:
        return {"ok": True, "ignored": True}

    update = DeliveryUpdate(
        waybill=str(waybill),
        status=str(status),
        order_id=payload.get("order_id"),
        delivered_at=payload.get("delivered_at"),
    )
    outcome = await settlement.reconciler.handle_delivery(update)
    return {"ok": True, **outcome}


# =========================================================
# LOGISTICS REMITTANCE WEBHOOK
# =========================================================

@router.post("/logistics/remittance")
async def logistics_remittance_webhook(request: Request, settlement: Settlement = Depends(get_settlement)):
    raw_body = await request.body()
    verify_signature(
        settlement.logistics_webhook_secret,
        raw_body,
        request.headers.get("X-Logistics-Signature"),
    )
    payload = _load_json(raw_body)

    missing = [f for f in ("order_id", "vendor_id", "amount", "logistics_partner") if payload.get(f) in (None, "")]
    if missing:
        raise HTTPException(422, f"Missing fields: {', '.join(missing)}")

    remittance = await settlement.cod.record_remittance(
        order_id=str(payload["order_id"]),
        vendor_id=str(payload["vendor_id"]),
        amount=payload["amount"],
        logistics_partner=str(payload["logistics_partner"]),
        awb_number=payload.get("awb_number"),
    )
    return {"ok": True, "remittance": remittance.model_dump(mode="json")}
