from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from toy_rental.models.enums import CONDITION_ORDINALS, RentalItemStatus, ReturnCondition

CENT = Decimal("0.01")
DAMAGED_RATE = Decimal("0.7")
DEGRADATION_RATE_PER_STEP = Decimal("0.15")
DEFAULT_BUCKET_HOURS = 48


def to_money(value) -> Decimal:
    return Decimal(str(value if value is not None else 0)).quantize(CENT, rounding=ROUND_HALF_UP)


def days_late(expected_return: datetime, actual_return: datetime, bucket_hours: int = DEFAULT_BUCKET_HOURS) -> int:
    """Number of chargeable late periods, 0 when returned on time.

    Any overdue time counts as one period; each full ``bucket_hours`` block
    adds another.
    """
    if actual_return <= expected_return:
        return 0
    overdue_seconds = (actual_return - expected_return).total_seconds()
    return int(overdue_seconds // (bucket_hours * 3600)) + 1


def item_late_fee(late_fee_per_day, days: int, quantity: int) -> Decimal:
    return to_money(Decimal(str(late_fee_per_day or 0)) * days * quantity)


def settle_item_status(condition_after: str) -> str:
    if condition_after == ReturnCondition.LOST.value:
        return RentalItemStatus.LOST.value
    if condition_after == ReturnCondition.DAMAGED.value:
        return RentalItemStatus.DAMAGED.value
    return RentalItemStatus.RETURNED.value


def item_damage_fee(replacement_price, condition_before: str, condition_after: str, quantity: int) -> Decimal:
    replacement = Decimal(str(replacement_price or 0))
    if condition_after == ReturnCondition.LOST.value:
        return to_money(replacement * quantity)
    if condition_after == ReturnCondition.DAMAGED.value:
        return to_money(replacement * DAMAGED_RATE * quantity)

    before = CONDITION_ORDINALS.get(condition_before, 0)
    after = CONDITION_ORDINALS.get(condition_after, 0)
    if after >= before:
        return to_money(0)
    return to_money(replacement * DEGRADATION_RATE_PER_STEP * (before - after) * quantity)
