from __future__ import annotations

import uuid
from typing import Any, Generic, Iterable, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from toy_rental.db.base import Base

ModelT = TypeVar("ModelT", bound=Base)


def coerce_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return None


class Repository(Generic[ModelT]):
    """Plain CRUD over one mapped model. Flushes, leaves commit to the caller."""

    def __init__(self, db: Session, model: type[ModelT]):
        self.db = db
        self.model = model

    def get(self, entity_id: Any) -> ModelT | None:
        key = coerce_uuid(entity_id)
        if key is None:
            return None
        return self.db.get(self.model, key)

    def list(
        self,
        limit: int,
        offset: int,
        criteria: Iterable[Any] = (),
        order_by: Any = None,
        options: Iterable[Any] = (),
    ) -> tuple[list[ModelT], int]:
        criteria = list(criteria)
        stmt = select(self.model).where(*criteria).limit(limit).offset(offset)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        for option in options:
            stmt = stmt.options(option)
        rows = list(self.db.execute(stmt).scalars().all())
        total = self.db.execute(select(func.count()).select_from(self.model).where(*criteria)).scalar_one()
        return rows, int(total)

    def add(self, entity: ModelT) -> ModelT:
        self.db.add(entity)
        self.db.flush()
        return entity

    def update(self, entity: ModelT, fields: dict[str, Any]) -> ModelT:
        for name, value in fields.items():
            setattr(entity, name, value)
        self.db.flush()
        return entity

    def delete(self, entity_id: Any) -> bool:
        entity = self.get(entity_id)
        if entity is None:
            return False
        self.db.delete(entity)
        self.db.flush()
        return True
