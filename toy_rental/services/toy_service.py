from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from toy_rental.models.enums import ToyCondition, values_of
from toy_rental.models.rental_models import Category, RentalItem, Toy, ToyImage
from toy_rental.schemas.toys import ToyUpsert

_TOY_FIELDS = (
    "name",
    "description",
    "age_recommendation",
    "condition",
    "rental_price",
    "late_fee_per_day",
    "replacement_price",
    "is_available",
    "stock",
)
_REQUIRED_ON_CREATE = ("name", "rental_price", "late_fee_per_day", "replacement_price", "stock")


def apply_toy_payload(db: Session, toy: Toy, payload: ToyUpsert, creating: bool = False) -> None:
    data = payload.model_dump(exclude_unset=True)
    if creating:
        missing = [field for field in _REQUIRED_ON_CREATE if data.get(field) is None]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")
    condition = data.get("condition")
    if condition is not None and condition not in values_of(ToyCondition):
        raise ValueError(f"condition must be one of: {', '.join(values_of(ToyCondition))}")

    for field in _TOY_FIELDS:
        if field in data and data[field] is not None:
            setattr(toy, field, data[field])

    if payload.category_ids is not None:
        categories = []
        for category_id in payload.category_ids:
            category = db.get(Category, category_id)
            if category is None:
                raise ValueError(f"Category {category_id} not found.")
            categories.append(category)
        toy.categories = categories


def add_toy_image(db: Session, toy: Toy, image_url: str, is_primary: bool) -> ToyImage:
    has_images = db.execute(select(ToyImage.id).where(ToyImage.toy_id == toy.id)).first() is not None
    if not has_images:
        is_primary = True
    if is_primary:
        db.execute(
            update(ToyImage)
            .where(ToyImage.toy_id == toy.id)
            .values(is_primary=False)
            .execution_options(synchronize_session="evaluate")
        )
    image = ToyImage(toy_id=toy.id, image_url=image_url.strip(), is_primary=is_primary)
    db.add(image)
    db.flush()
    return image


def serialize_category(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "description": category.description,
    }


def serialize_image(image: ToyImage) -> dict:
    return {
        "id": image.id,
        "toy_id": image.toy_id,
        "image_url": image.image_url,
        "is_primary": bool(image.is_primary),
    }


def serialize_toy(toy: Toy) -> dict:
    return {
        "id": toy.id,
        "name": toy.name,
        "description": toy.description,
        "age_recommendation": toy.age_recommendation,
        "condition": toy.condition,
        "rental_price": float(toy.rental_price or 0),
        "late_fee_per_day": float(toy.late_fee_per_day or 0),
        "replacement_price": float(toy.replacement_price or 0),
        "is_available": bool(toy.is_available),
        "stock": toy.stock,
        "categories": [serialize_category(category) for category in toy.categories],
        "images": [serialize_image(image) for image in toy.images],
    }


def toy_has_rentals(db: Session, toy_id) -> bool:
    return db.execute(select(RentalItem.id).where(RentalItem.toy_id == toy_id).limit(1)).first() is not None
