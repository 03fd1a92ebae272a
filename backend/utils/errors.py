"""
Settlement error taxonomy.

SettlementError and its subclasses are caller-facing domain errors: they are
reported synchronously and never retried. IllegalTransition is deliberately
outside that hierarchy; it signals a bug and must reach the top of the stack.
GatewayError is the only error a payment gateway implementation may raise.
"""


class SettlementError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidSplitInput(SettlementError, ValueError):
    status_code = 422


class AccountNotFound(SettlementError):
    status_code = 404


class AccountExists(SettlementError):
    status_code = 409


class AccountNotEligible(SettlementError):
    status_code = 409


class AccountStateError(SettlementError):
    status_code = 409


class PayoutNotFound(SettlementError):
    status_code = 404


class PayoutStateError(SettlementError):
    status_code = 409


class RetryBudgetExhausted(SettlementError):
    status_code = 409


class PayoutScheduleNotFound(SettlementError):
    status_code = 404


class OrderNotFound(SettlementError):
    status_code = 404


class InvalidSignature(SettlementError):
    status_code = 400


class RemittanceNotFound(SettlementError):
    status_code = 404


class IllegalTransition(RuntimeError):
    def __init__(self, entity: str, entity_id: str, current: str, target: str):
        super().__init__(f"Illegal {entity} transition {current} -> {target} ({entity_id})")
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target


class GatewayError(Exception):
    def __init__(
        self,
        code: str,
        description: str,
        *,
        source: str | None = None,
        step: str | None = None,
        reason: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(f"{code}: {description}")
        self.code = code
        self.description = description
        self.source = source
        self.step = step
        self.reason = reason
        self.status_code = status_code

    def to_detail(self) -> dict:
        return {
            "code": self.code,
            "description": self.description,
            "source": self.source,
            "step": self.step,
            "reason": self.reason,
        }
