import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from config.constants import (
    WITHHOLDING_MIN_AMOUNT,
    WITHHOLDING_RATE_WITH_TAX_ID,
    WITHHOLDING_RATE_WITHOUT_TAX_ID,
)
from utils.errors import InvalidSplitInput


@dataclass(frozen=True)
class SplitResult:
    gross_amount: int
    commission_amount: int
    tax_amount: int
    net_amount: int

    @property
    def vendor_amount(self) -> int:
        return self.net_amount


def normalize_gross(gross) -> int:
    if isinstance(gross, bool):
        raise InvalidSplitInput("Gross amount must be a number")

    if isinstance(gross, float):
        if not math.isfinite(gross):
            raise InvalidSplitInput("Gross amount must be finite")
        if not gross.is_integer():
            raise InvalidSplitInput("Gross amount must be in whole minor units")
        gross = int(gross)

    if isinstance(gross, Decimal):
        if not gross.is_finite() or gross != gross.to_integral_value():
            raise InvalidSplitInput("Gross amount must be finite whole minor units")
        gross = int(gross)

    if not isinstance(gross, int):
        raise InvalidSplitInput("Gross amount must be a number")

    if gross < 0:
        raise InvalidSplitInput("Gross amount cannot be negative")

    return gross


def normalize_percentage(value, name: str = "commission_percentage") -> Decimal:
    if isinstance(value, bool):
        raise InvalidSplitInput(f"{name} must be a number")
    try:
        pct = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidSplitInput(f"{name} must be a number")

    if not pct.is_finite() or pct < 0 or pct > 100:
        raise InvalidSplitInput(f"{name} must be between 0 and 100")
    return pct


def _floor_share(gross: int, rate: Decimal) -> int:
    # never round up: the platform's take is floored to the paisa
    return int((Decimal(gross) * rate) // 100)


def withholding_rate(*, has_tax_id: bool) -> Decimal:
    return WITHHOLDING_RATE_WITH_TAX_ID if has_tax_id else WITHHOLDING_RATE_WITHOUT_TAX_ID


def split(
    gross,
    commission_percentage,
    withholding_applicable: bool,
    *,
    has_tax_id: bool = True,
) -> SplitResult:
    """
    Decompose a gross payment into commission, withheld tax and the vendor's net.

    commission + tax + net == gross and net >= 0 for every valid input.
    """
    gross = normalize_gross(gross)
    rate = normalize_percentage(commission_percentage)

    commission_amount = _floor_share(gross, rate)

    tax_amount = 0
    if withholding_applicable and gross >= WITHHOLDING_MIN_AMOUNT:
        tax_amount = _floor_share(gross, withholding_rate(has_tax_id=has_tax_id))
        tax_amount = min(tax_amount, gross - commission_amount)

    return SplitResult(
        gross_amount=gross,
        commission_amount=commission_amount,
        tax_amount=tax_amount,
        net_amount=gross - commission_amount - tax_amount,
    )
