from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from toy_rental.config import Settings
from toy_rental.models.enums import (
    TERMINAL_RENTAL_STATES,
    PaymentStatus,
    RentalItemStatus,
    RentalStatus,
    ReturnCondition,
    ToyCondition,
    values_of,
)
from toy_rental.models.rental_models import Rental, RentalItem, Toy
from toy_rental.schemas.rentals import CreateRentalItemDto, ReturnRentalItemDto
from toy_rental.services.errors import (
    InsufficientStock,
    InvalidCondition,
    InvalidRentalRequest,
    InvalidRentalState,
    InvalidReturnDate,
    PersistenceFailure,
    RentalError,
    RentalNotFound,
    ToyNotFound,
    UnknownRentalItem,
)
from toy_rental.services.fees import (
    DEFAULT_BUCKET_HOURS,
    days_late,
    item_damage_fee,
    item_late_fee,
    settle_item_status,
    to_money,
)
from toy_rental.services.repository import coerce_uuid
from toy_rental.services.stores import RentalStore, ToyStore

_TOY_CONDITIONS = set(values_of(ToyCondition))
_RETURN_CONDITIONS = set(values_of(ReturnCondition))


def as_utc_naive(value: datetime) -> datetime:
    """Timestamps are stored as naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class RentalService:
    """Creates rentals and settles returns.

    Every public operation is one unit of work on ``db``: it commits once on
    success and rolls back everything on any failure.
    """

    def __init__(
        self,
        db: Session,
        toys: ToyStore | None = None,
        rentals: RentalStore | None = None,
        settings: Settings | None = None,
        logger: logging.Logger | None = None,
    ):
        self.db = db
        self.toys = toys or ToyStore(db)
        self.rentals = rentals or RentalStore(db, self.toys)
        self.bucket_hours = settings.late_fee_bucket_hours if settings else DEFAULT_BUCKET_HOURS
        self.logger = logger or logging.getLogger("toy_rental.rentals")

    def create_rental(
        self,
        user_id: Any,
        rental_date: datetime,
        expected_return_date: datetime,
        items: Iterable[CreateRentalItemDto],
        notes: str | None = None,
    ) -> Rental:
        rental_date = as_utc_naive(rental_date)
        expected_return_date = as_utc_naive(expected_return_date)
        if expected_return_date <= rental_date:
            raise InvalidReturnDate("Expected return date must be after the rental date.")
        items = list(items or [])
        if not items:
            raise InvalidRentalRequest("At least one rental item is required.")

        rental = Rental(
            id=uuid.uuid4(),
            user_id=coerce_uuid(user_id),
            status=RentalStatus.PENDING.value,
            rental_date=rental_date,
            expected_return_date=expected_return_date,
            late_fee=Decimal("0"),
            damage_fee=Decimal("0"),
            payment_status=PaymentStatus.UNPAID.value,
            notes=notes or None,
        )

        try:
            total = Decimal("0")
            requested_by_toy: dict[uuid.UUID, int] = {}
            for position, line in enumerate(items):
                quantity = int(line.quantity or 0)
                if quantity < 1:
                    raise InvalidRentalRequest(f"Quantity for toy {line.toy_id} must be at least 1.")
                if line.condition_before not in _TOY_CONDITIONS:
                    raise InvalidCondition(line.condition_before)

                toy = self.toys.find_by_id(line.toy_id)
                if toy is None:
                    raise ToyNotFound(line.toy_id)
                already_requested = requested_by_toy.get(toy.id, 0)
                if toy.stock < already_requested + quantity:
                    self.logger.info(
                        "Stock rejected toy=%s requested=%s available=%s",
                        toy.id,
                        already_requested + quantity,
                        toy.stock,
                    )
                    raise InsufficientStock(toy.id, toy.name, already_requested + quantity, toy.stock)
                requested_by_toy[toy.id] = already_requested + quantity

                price_per_unit = to_money(toy.rental_price)
                total += price_per_unit * quantity
                rental.rental_items.append(
                    RentalItem(
                        id=uuid.uuid4(),
                        toy_id=toy.id,
                        position=position,
                        quantity=quantity,
                        price_per_unit=price_per_unit,
                        condition_before=line.condition_before,
                        condition_after=line.condition_before,
                        damage_fee=Decimal("0"),
                        status=RentalItemStatus.RENTED.value,
                    )
                )

            rental.total_rental_price = to_money(total)
            self.rentals.insert_with_items(rental)
            self.db.commit()
        except RentalError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.exception("Could not persist rental for user=%s", user_id)
            raise PersistenceFailure("Could not create rental.") from exc

        self.logger.info(
            "Rental created id=%s user=%s items=%s total=%s",
            rental.id,
            rental.user_id,
            len(rental.rental_items),
            rental.total_rental_price,
        )
        return rental

    def return_rental(
        self,
        rental_id: Any,
        actual_return_date: datetime,
        items: Iterable[ReturnRentalItemDto],
        notes: str | None = None,
    ) -> Rental:
        actual_return_date = as_utc_naive(actual_return_date)
        try:
            rental = self.rentals.find_by_id(rental_id, with_items=True, for_update=True)
            if rental is None:
                raise RentalNotFound(rental_id)
            if rental.status in TERMINAL_RENTAL_STATES or rental.actual_return_date is not None:
                raise InvalidRentalState(f"Rental {rental.id} is already {rental.status}.")
            if actual_return_date < rental.rental_date:
                raise InvalidReturnDate("Actual return date cannot be before the rental date.")

            items_by_id = {item.id: item for item in rental.rental_items}
            toy_cache: dict[uuid.UUID, Toy] = {}

            late_days = days_late(rental.expected_return_date, actual_return_date, self.bucket_hours)
            total_late_fee = Decimal("0")
            if late_days:
                # Late fees apply to every line.
                for item in rental.rental_items:
                    toy = self._require_toy(item.toy_id, toy_cache)
                    total_late_fee += item_late_fee(toy.late_fee_per_day, late_days, int(item.quantity))
                next_status = RentalStatus.OVERDUE.value
            else:
                next_status = RentalStatus.COMPLETED.value

            total_damage_fee = Decimal("0")
            seen: set[uuid.UUID] = set()
            for report in items or []:
                item_id = coerce_uuid(report.rental_item_id)
                item = items_by_id.get(item_id)
                if item is None:
                    raise UnknownRentalItem(report.rental_item_id)
                if item_id in seen:
                    raise InvalidRentalRequest(f"Rental item {item_id} reported more than once.")
                seen.add(item_id)

                condition_after = report.condition_after
                if condition_after not in _RETURN_CONDITIONS:
                    raise InvalidCondition(condition_after)
                description = (report.damage_description or "").strip() or None
                if condition_after == ReturnCondition.DAMAGED.value and not description:
                    raise InvalidRentalRequest(f"Damage description is required for rental item {item_id}.")

                toy = self._require_toy(item.toy_id, toy_cache)
                damage_fee = item_damage_fee(
                    toy.replacement_price,
                    item.condition_before,
                    condition_after,
                    int(item.quantity),
                )
                total_damage_fee += damage_fee
                self.rentals.update_item(
                    item,
                    {
                        "condition_after": condition_after,
                        "damage_description": description,
                        "damage_fee": damage_fee,
                        "status": settle_item_status(condition_after),
                    },
                )

            unreported = [str(item.id) for item in rental.rental_items if item.id not in seen]
            if unreported:
                # Every line leaves `rented` at settlement.
                raise InvalidRentalRequest(f"Return must report every rental item; missing {', '.join(unreported)}.")

            summary = {
                "status": next_status,
                "actual_return_date": actual_return_date,
                "late_fee": to_money(total_late_fee),
                "damage_fee": to_money(total_damage_fee),
            }
            if notes:
                summary["notes"] = notes
            self.rentals.update_summary(rental, summary)
            self.db.commit()
        except RentalError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.exception("Could not settle return for rental=%s", rental_id)
            raise PersistenceFailure("Could not process rental return.") from exc

        self.logger.info(
            "Rental returned id=%s status=%s late_fee=%s damage_fee=%s",
            rental.id,
            rental.status,
            rental.late_fee,
            rental.damage_fee,
        )
        return rental

    def cancel_rental(self, rental_id: Any) -> Rental:
        try:
            rental = self.rentals.find_by_id(rental_id, with_items=True, for_update=True)
            if rental is None:
                raise RentalNotFound(rental_id)
            if rental.status != RentalStatus.PENDING.value:
                raise InvalidRentalState(f"Only pending rentals can be cancelled; rental {rental.id} is {rental.status}.")
            self._release_rented_items(rental)
            self.rentals.update_summary(rental, {"status": RentalStatus.CANCELLED.value})
            self.db.commit()
        except RentalError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.exception("Could not cancel rental=%s", rental_id)
            raise PersistenceFailure("Could not cancel rental.") from exc

        self.logger.info("Rental cancelled id=%s", rental.id)
        return rental

    def delete_rental(self, rental_id: Any) -> None:
        try:
            rental = self.rentals.find_by_id(rental_id, with_items=True, for_update=True)
            if rental is None:
                raise RentalNotFound(rental_id)
            self._release_rented_items(rental)
            self.db.delete(rental)
            self.db.commit()
        except RentalError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.exception("Could not delete rental=%s", rental_id)
            raise PersistenceFailure("Could not delete rental.") from exc
        self.logger.info("Rental deleted id=%s", rental_id)

    def get_rental(self, rental_id: Any) -> Rental:
        rental = self.rentals.find_by_id(rental_id, with_items=True)
        if rental is None:
            raise RentalNotFound(rental_id)
        return rental

    def list_rentals(self, limit: int, offset: int, user_id: Any = None) -> tuple[list[Rental], int]:
        criteria = []
        if user_id is not None:
            criteria.append(Rental.user_id == coerce_uuid(user_id))
        return self.rentals.records.list(
            limit,
            offset,
            criteria=criteria,
            order_by=Rental.rental_date.desc(),
            options=[selectinload(Rental.rental_items)],
        )

    def _require_toy(self, toy_id: uuid.UUID, cache: dict[uuid.UUID, Toy]) -> Toy:
        toy = cache.get(toy_id)
        if toy is None:
            toy = self.toys.find_by_id(toy_id)
            if toy is None:
                raise ToyNotFound(toy_id)
            cache[toy_id] = toy
        return toy

    def _release_rented_items(self, rental: Rental) -> None:
        for item in rental.rental_items:
            if item.status != RentalItemStatus.RENTED.value:
                continue
            self.rentals.update_item(
                item,
                {
                    "condition_after": item.condition_before,
                    "status": RentalItemStatus.RETURNED.value,
                },
            )


def _money(value) -> float:
    return float(to_money(value))


def serialize_rental_item(item: RentalItem) -> dict:
    return {
        "id": item.id,
        "rental_id": item.rental_id,
        "toy_id": item.toy_id,
        "quantity": item.quantity,
        "price_per_unit": _money(item.price_per_unit),
        "subtotal": _money(item.subtotal),
        "condition_before": item.condition_before,
        "condition_after": item.condition_after,
        "damage_description": item.damage_description,
        "damage_fee": _money(item.damage_fee),
        "status": item.status,
    }


def serialize_rental(rental: Rental) -> dict:
    return {
        "id": rental.id,
        "user_id": rental.user_id,
        "status": rental.status,
        "rental_date": rental.rental_date,
        "expected_return_date": rental.expected_return_date,
        "actual_return_date": rental.actual_return_date,
        "total_rental_price": _money(rental.total_rental_price),
        "late_fee": _money(rental.late_fee),
        "damage_fee": _money(rental.damage_fee),
        "total_amount": _money(rental.total_amount),
        "payment_status": rental.payment_status,
        "notes": rental.notes,
        "rental_items": [serialize_rental_item(item) for item in rental.rental_items],
    }
