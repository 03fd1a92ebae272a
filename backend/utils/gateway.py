import itertools
from abc import ABC, abstractmethod
from typing import Optional

from config.constants import CURRENCY
from utils.errors import GatewayError
from utils.signatures import compute_signature, signatures_match


class PaymentGateway(ABC):
    """
    Capability surface the settlement layer needs from a payment gateway.

    Every failure, including timeouts and network errors, is raised as
    GatewayError.
    """

    name = "gateway"

    @abstractmethod
    async def create_order(self, *, amount: int, receipt: str, notes: Optional[dict] = None) -> dict: ...

    @abstractmethod
    async def capture_payment(self, payment_id: str, amount: int) -> dict: ...

    @abstractmethod
    async def fetch_payment(self, payment_id: str) -> dict: ...

    @abstractmethod
    async def fetch_refund(self, refund_id: str) -> dict: ...

    @abstractmethod
    async def create_transfer(
        self,
        *,
        account_id: str,
        amount: int,
        notes: Optional[dict] = None,
        on_hold: bool = False,
    ) -> dict: ...

    @abstractmethod
    async def fetch_transfer(self, transfer_id: str) -> dict: ...

    @abstractmethod
    async def reverse_transfer(self, transfer_id: str, amount: Optional[int] = None) -> dict: ...

    @abstractmethod
    async def edit_transfer(self, transfer_id: str, *, on_hold: bool, on_hold_until: Optional[int] = None) -> dict:
        """Toggle the hold on an existing transfer. No payout flow calls this; holds are kept on our side."""

    @abstractmethod
    def verify_payment_signature(self, *, gateway_order_id: str, payment_id: str, signature: str) -> bool: ...

    @abstractmethod
    def verify_webhook_signature(self, *, raw_body: bytes, signature: str) -> bool: ...


class InMemoryGateway(PaymentGateway):
    """
    Sandbox gateway for tests and local runs (PAYMENT_GATEWAY=sandbox).

    Transfers are accepted in "pending" state; settle them with
    `settle_transfer`. Failures are scripted with `fail_next_transfers`.
    """

    name = "sandbox"

    def __init__(self, *, key_secret: str = "sandbox_secret", webhook_secret: str = "sandbox_webhook_secret"):
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.orders: dict[str, dict] = {}
        self.payments: dict[str, dict] = {}
        self.refunds: dict[str, dict] = {}
        self.transfers: dict[str, dict] = {}
        self.reversals: list[dict] = []
        self.transfer_calls: list[dict] = []
        self._scripted_failures: list[GatewayError] = []
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_sandbox{next(self._ids):06d}"

    # ---- scripting helpers -----------------------------------------

    def fail_next_transfers(self, count: int = 1, *, code: str = "BAD_REQUEST_ERROR", description: str = "Transfer rejected"):
        for _ in range(count):
            self._scripted_failures.append(
                GatewayError(code, description, source="business", step="transfer_creation", reason="sandbox_failure")
            )

    def add_payment(
        self,
        payment_id: str,
        *,
        amount: int,
        order_id: Optional[str] = None,
        status: str = "authorized",
        notes: Optional[dict] = None,
    ):
        self.payments[payment_id] = {
            "id": payment_id,
            "amount": amount,
            "currency": CURRENCY,
            "order_id": order_id,
            "status": status,
            "notes": notes or {},
        }

    def add_refund(self, refund_id: str, *, payment_id: str, amount: int):
        self.refunds[refund_id] = {"id": refund_id, "payment_id": payment_id, "amount": amount, "status": "processed"}

    def settle_transfer(self, transfer_id: str, status: str = "processed", **error) -> dict:
        transfer = self.transfers[transfer_id]
        transfer["status"] = status
        if error:
            transfer["error"] = error
        return transfer

    def sign_payment(self, gateway_order_id: str, payment_id: str) -> str:
        return compute_signature(self.key_secret, f"{gateway_order_id}|{payment_id}".encode("utf-8"))

    def sign_webhook(self, raw_body: bytes) -> str:
        return compute_signature(self.webhook_secret, raw_body)

    # ---- capability surface ----------------------------------------

    async def create_order(self, *, amount, receipt, notes=None):
        order = {
            "id": self._next_id("order"),
            "amount": amount,
            "currency": CURRENCY,
            "receipt": receipt,
            "notes": notes or {},
            "status": "created",
        }
        self.orders[order["id"]] = order
        return dict(order)

    async def capture_payment(self, payment_id, amount):
        payment = self.payments.get(payment_id)
        if not payment:
            raise GatewayError("BAD_REQUEST_ERROR", "The id provided does not exist", status_code=400)
        if payment["amount"] != amount:
            raise GatewayError("BAD_REQUEST_ERROR", "Capture amount must be equal to the amount authorized", status_code=400)
        payment["status"] = "captured"
        return dict(payment)

    async def fetch_payment(self, payment_id):
        payment = self.payments.get(payment_id)
        if not payment:
            raise GatewayError("BAD_REQUEST_ERROR", "The id provided does not exist", status_code=400)
        return dict(payment)

    async def fetch_refund(self, refund_id):
        refund = self.refunds.get(refund_id)
        if not refund:
            raise GatewayError("BAD_REQUEST_ERROR", "The id provided does not exist", status_code=400)
        return dict(refund)

    async def create_transfer(self, *, account_id, amount, notes=None, on_hold=False):
        self.transfer_calls.append({"account_id": account_id, "amount": amount, "notes": notes or {}})
        if self._scripted_failures:
            raise self._scripted_failures.pop(0)

        transfer = {
            "id": self._next_id("trf"),
            "recipient": account_id,
            "amount": amount,
            "currency": CURRENCY,
            "notes": notes or {},
            "on_hold": on_hold,
            "status": "pending",
        }
        self.transfers[transfer["id"]] = transfer
        return dict(transfer)

    async def fetch_transfer(self, transfer_id):
        transfer = self.transfers.get(transfer_id)
        if not transfer:
            raise GatewayError("BAD_REQUEST_ERROR", "The id provided does not exist", status_code=400)
        return dict(transfer)

    async def reverse_transfer(self, transfer_id, amount=None):
        transfer = self.transfers.get(transfer_id)
        if not transfer:
            raise GatewayError("BAD_REQUEST_ERROR", "The id provided does not exist", status_code=400)
        reversal = {
            "id": self._next_id("rvrsl"),
            "transfer_id": transfer_id,
            "amount": amount if amount is not None else transfer["amount"],
        }
        self.reversals.append(reversal)
        transfer["status"] = "reversed"
        return dict(reversal)

    async def edit_transfer(self, transfer_id, *, on_hold, on_hold_until=None):
        """Sandbox counterpart of the hold toggle; not called by the payout flows."""
        transfer = self.transfers.get(transfer_id)
        if not transfer:
            raise GatewayError("BAD_REQUEST_ERROR", "The id provided does not exist", status_code=400)
        transfer["on_hold"] = on_hold
        transfer["on_hold_until"] = on_hold_until
        return dict(transfer)

    def verify_payment_signature(self, *, gateway_order_id, payment_id, signature):
        return signatures_match(self.sign_payment(gateway_order_id, payment_id), signature)

    def verify_webhook_signature(self, *, raw_body, signature):
        return signatures_match(self.sign_webhook(raw_body), signature)
