from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.util import identity_key

from toy_rental.models.enums import RentalItemStatus
from toy_rental.models.rental_models import Rental, RentalItem, Toy
from toy_rental.services.errors import InsufficientStock
from toy_rental.services.repository import Repository, coerce_uuid


class ToyStore:
    def __init__(self, db: Session):
        self.db = db
        self.records = Repository(db, Toy)

    def find_by_id(self, toy_id: Any) -> Toy | None:
        return self.records.get(toy_id)

    def adjust_stock(self, toy_id: Any, delta: int) -> bool:
        """Apply ``delta`` to stock only if the result stays non-negative.

        Check and write happen in one UPDATE, so two concurrent rentals
        cannot both pass the check. Returns False when nothing matched.
        """
        key = coerce_uuid(toy_id)
        stmt = (
            update(Toy)
            .where(Toy.id == key, Toy.stock + delta >= 0)
            .values(stock=Toy.stock + delta)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        cached = self.db.identity_map.get(identity_key(Toy, key))
        if cached is not None:
            self.db.expire(cached, ["stock"])
        return result.rowcount == 1


class RentalStore:
    def __init__(self, db: Session, toys: ToyStore | None = None):
        self.db = db
        self.toys = toys or ToyStore(db)
        self.records = Repository(db, Rental)

    def find_by_id(self, rental_id: Any, with_items: bool = True, for_update: bool = False) -> Rental | None:
        key = coerce_uuid(rental_id)
        if key is None:
            return None
        stmt = select(Rental).where(Rental.id == key)
        if with_items:
            stmt = stmt.options(selectinload(Rental.rental_items))
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.db.execute(stmt).scalars().first()

    def insert_with_items(self, rental: Rental) -> Rental:
        self.db.add(rental)
        self.db.flush()
        for item in rental.rental_items:
            if not self.toys.adjust_stock(item.toy_id, -int(item.quantity)):
                raise InsufficientStock(item.toy_id, None, int(item.quantity))
        return rental

    def update_item(self, item: RentalItem, fields: dict[str, Any]) -> RentalItem:
        for name, value in fields.items():
            setattr(item, name, value)
        self.db.flush()
        if fields.get("status") == RentalItemStatus.RETURNED.value:
            # Only items coming back in usable condition go back on the shelf.
            self.toys.adjust_stock(item.toy_id, int(item.quantity))
        return item

    def update_summary(self, rental: Rental, fields: dict[str, Any]) -> Rental:
        return self.records.update(rental, fields)
