"""Commission amount calculation.

PERCENTAGE:   base_value * reference / 100
FIXED_AMOUNT: reference

Amounts are ``Decimal`` quantized to the configured money quantum (cents by
default) with ROUND_HALF_UP.  References keep four decimal places, the
precision of the stored column.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from settlement.config import settings
from settlement.models.commission import CommissionType
from settlement.services.errors import ValidationError

HUNDRED = Decimal("100")
REFERENCE_QUANTUM = Decimal("0.0001")


def to_decimal(value, field: str) -> Decimal:
    """Coerce *value* to Decimal without going through binary floats."""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"{field} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def quantize_money(amount: Decimal) -> Decimal:
    return amount.quantize(settings.money_quantum, rounding=ROUND_HALF_UP)


def normalize_reference(reference) -> Decimal:
    """Reference value as stored: positive, four decimal places."""
    ref = to_decimal(reference, "reference")
    if ref > 0:
        ref = ref.quantize(REFERENCE_QUANTUM, rounding=ROUND_HALF_UP)
    if ref <= 0:
        raise ValidationError(f"reference must be positive, got {reference}")
    return ref


def calculate_commission(base_value, commission_type: CommissionType, reference) -> Decimal:
    """Return the commission amount for a sale of *base_value*.

    The reference is first rounded to its stored precision, so the amount can
    always be recomputed from the persisted row.
    """
    base = to_decimal(base_value, "base_value")
    if base <= 0:
        raise ValidationError(f"base_value must be positive, got {base}")
    ref = normalize_reference(reference)

    commission_type = CommissionType(commission_type)
    if commission_type == CommissionType.PERCENTAGE:
        amount = base * ref / HUNDRED
    else:
        amount = ref
    amount = quantize_money(amount)
    if amount <= 0:
        raise ValidationError(
            f"Commission rounds to {amount}: {ref} on {base} is below the smallest payable amount"
        )
    return amount
