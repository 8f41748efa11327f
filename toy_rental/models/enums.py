from __future__ import annotations

from enum import Enum


class ToyCondition(str, Enum):
    NEW = "new"
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"

    @property
    def ordinal(self) -> int:
        return CONDITION_ORDINALS[self.value]


# Higher is better. Damage fees are sized by the drop between two ordinals.
CONDITION_ORDINALS = {
    "new": 5,
    "excellent": 4,
    "good": 3,
    "fair": 2,
    "poor": 1,
}


class ReturnCondition(str, Enum):
    NEW = "new"
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    DAMAGED = "damaged"
    LOST = "lost"

    @property
    def ordinal(self) -> int | None:
        return CONDITION_ORDINALS.get(self.value)


class RentalStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


TERMINAL_RENTAL_STATES = {RentalStatus.COMPLETED.value, RentalStatus.CANCELLED.value}


class RentalItemStatus(str, Enum):
    RENTED = "rented"
    RETURNED = "returned"
    DAMAGED = "damaged"
    LOST = "lost"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_PAID = "partially_paid"


class UserRole(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"


def values_of(enum_type: type[Enum]) -> list[str]:
    return [member.value for member in enum_type]
