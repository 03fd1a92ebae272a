import asyncio
import base64
import json
import logging
from typing import Optional
from urllib import request, error

from config.constants import CURRENCY
from utils.errors import GatewayError
from utils.gateway import PaymentGateway
from utils.signatures import compute_signature, signatures_match

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"

logger = logging.getLogger(__name__)


def _basic_auth_header(key_id: str, key_secret: str) -> str:
    token = f"{key_id}:{key_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(token).decode("utf-8")


def _gateway_error_from_body(status: int, body: str) -> GatewayError:
    try:
        err = json.loads(body).get("error") or {}
    except (ValueError, AttributeError):
        err = {}
    return GatewayError(
        err.get("code") or "GATEWAY_ERROR",
        err.get("description") or f"Razorpay returned HTTP {status}",
        source=err.get("source"),
        step=err.get("step"),
        reason=err.get("reason"),
        status_code=status,
    )


class RazorpayGateway(PaymentGateway):
    """
    Razorpay REST client (orders, payments, refunds and Route transfers).

    Requests are blocking urllib calls pushed to a worker thread and bounded
    by `timeout` seconds; anything that is not a 2xx answer becomes a
    GatewayError.
    """

    name = "razorpay"

    def __init__(self, *, key_id: str, key_secret: str, webhook_secret: Optional[str], timeout: float = 20):
        if not key_id or not key_secret:
            raise RuntimeError("Razorpay keys are not configured")
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.timeout = timeout

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        req = request.Request(
            url=f"{RAZORPAY_API_BASE}{path}",
            data=json.dumps(payload).encode("utf-8") if payload is not None else None,
            headers={
                "Content-Type": "application/json",
                "Authorization": _basic_auth_header(self.key_id, self.key_secret),
            },
            method=method,
        )
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except error.HTTPError as e:
            details = e.read().decode("utf-8", errors="ignore")
            raise _gateway_error_from_body(e.code, details)
        except error.URLError as e:
            raise GatewayError("NETWORK_ERROR", f"Razorpay unreachable: {e.reason}", source="network")
        except (TimeoutError, OSError) as e:
            raise GatewayError("NETWORK_ERROR", f"Razorpay request failed: {e}", source="network")
        except ValueError:
            raise GatewayError("GATEWAY_ERROR", "Razorpay returned an unreadable response", source="gateway")

    async def _call(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._request, method, path, payload),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("RAZORPAY_TIMEOUT method=%s path=%s", method, path)
            raise GatewayError("TIMEOUT", f"Razorpay did not answer within {self.timeout}s", source="network")

    # ---- orders / payments -----------------------------------------

    async def create_order(self, *, amount, receipt, notes=None):
        return await self._call("POST", "/orders", {
            "amount": amount,
            "currency": CURRENCY,
            "receipt": receipt,
            "notes": notes or {},
        })

    async def capture_payment(self, payment_id, amount):
        return await self._call("POST", f"/payments/{payment_id}/capture", {
            "amount": amount,
            "currency": CURRENCY,
        })

    async def fetch_payment(self, payment_id):
        return await self._call("GET", f"/payments/{payment_id}")

    async def fetch_refund(self, refund_id):
        return await self._call("GET", f"/refunds/{refund_id}")

    # ---- Route transfers -------------------------------------------

    async def create_transfer(self, *, account_id, amount, notes=None, on_hold=False):
        return await self._call("POST", "/transfers", {
            "account": account_id,
            "amount": amount,
            "currency": CURRENCY,
            "notes": notes or {},
            "on_hold": on_hold,
        })

    async def fetch_transfer(self, transfer_id):
        return await self._call("GET", f"/transfers/{transfer_id}")

    async def reverse_transfer(self, transfer_id, amount=None):
        payload = {"amount": amount} if amount is not None else {}
        return await self._call("POST", f"/transfers/{transfer_id}/reversals", payload)

    async def edit_transfer(self, transfer_id, *, on_hold, on_hold_until=None):
        """PATCH /transfers/{id}; not called by the payout flows, which hold payouts locally."""
        payload = {"on_hold": on_hold}
        if on_hold_until is not None:
            payload["on_hold_until"] = on_hold_until
        return await self._call("PATCH", f"/transfers/{transfer_id}", payload)

    # ---- signatures ------------------------------------------------

    def verify_payment_signature(self, *, gateway_order_id, payment_id, signature):
        message = f"{gateway_order_id}|{payment_id}".encode("utf-8")
        return signatures_match(compute_signature(self.key_secret, message), signature)

    def verify_webhook_signature(self, *, raw_body, signature):
        if not self.webhook_secret:
            raise RuntimeError("Razorpay webhook secret is not configured")
        return signatures_match(compute_signature(self.webhook_secret, raw_body), signature)
