from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String, Table, Text, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from toy_rental.db.base import Base
from toy_rental.models.enums import (
    PaymentStatus,
    RentalItemStatus,
    RentalStatus,
    ReturnCondition,
    ToyCondition,
    UserRole,
    values_of,
)


def _in_check(column: str, enum_type, name: str) -> CheckConstraint:
    allowed = ", ".join(f"'{value}'" for value in values_of(enum_type))
    return CheckConstraint(f"{column} IN ({allowed})", name=name)


toy_categories = Table(
    "toy_categories",
    Base.metadata,
    Column("toy_id", Uuid, ForeignKey("toys.id", ondelete="CASCADE"), primary_key=True),
    Column("category_id", Uuid, ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (_in_check("role", UserRole, "ck_users_role"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(256), nullable=False)
    password_salt = Column(String(64), nullable=False)
    full_name = Column(String(255), nullable=False)
    phone_number = Column(String(20))
    address = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    role = Column(String(20), nullable=False, default=UserRole.CUSTOMER.value)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    rentals = relationship("Rental", back_populates="user")
    tokens = relationship("UserToken", back_populates="user", cascade="all, delete-orphan")


class UserToken(Base):
    __tablename__ = "user_tokens"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    access_token = Column(String(1024), nullable=False, unique=True, index=True)
    refresh_token = Column(String(1024), nullable=False, unique=True)
    access_token_expires_at = Column(DateTime, nullable=False)
    refresh_token_expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User", back_populates="tokens")


class Category(Base):
    __tablename__ = "categories"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, server_default=func.now())

    toys = relationship("Toy", secondary=toy_categories, back_populates="categories")


class Toy(Base):
    __tablename__ = "toys"
    __table_args__ = (
        _in_check("condition", ToyCondition, "ck_toys_condition"),
        CheckConstraint("stock >= 0", name="ck_toys_stock_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    age_recommendation = Column(String(50))
    condition = Column(String(50), nullable=False, default=ToyCondition.NEW.value)
    rental_price = Column(Numeric(10, 2), nullable=False)
    late_fee_per_day = Column(Numeric(10, 2), nullable=False)
    replacement_price = Column(Numeric(10, 2), nullable=False)
    is_available = Column(Boolean, nullable=False, default=True)
    stock = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    categories = relationship("Category", secondary=toy_categories, back_populates="toys")
    images = relationship("ToyImage", back_populates="toy", cascade="all, delete-orphan", order_by="ToyImage.created_at")
    rental_items = relationship("RentalItem", back_populates="toy")


class ToyImage(Base):
    __tablename__ = "toy_images"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    toy_id = Column(Uuid, ForeignKey("toys.id", ondelete="CASCADE"), nullable=False, index=True)
    image_url = Column(String(255), nullable=False)
    is_primary = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now())

    toy = relationship("Toy", back_populates="images")


class Rental(Base):
    __tablename__ = "rentals"
    __table_args__ = (
        _in_check("status", RentalStatus, "ck_rentals_status"),
        _in_check("payment_status", PaymentStatus, "ck_rentals_payment_status"),
        CheckConstraint("expected_return_date > rental_date", name="ck_rentals_expected_after_rental"),
        CheckConstraint(
            "actual_return_date IS NULL OR actual_return_date >= rental_date",
            name="ck_rentals_actual_after_rental",
        ),
        CheckConstraint("late_fee >= 0 AND damage_fee >= 0", name="ck_rentals_fees_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String(50), nullable=False, default=RentalStatus.PENDING.value)
    rental_date = Column(DateTime, nullable=False)
    expected_return_date = Column(DateTime, nullable=False)
    actual_return_date = Column(DateTime)
    total_rental_price = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    late_fee = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    damage_fee = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    payment_status = Column(String(50), nullable=False, default=PaymentStatus.UNPAID.value)
    notes = Column(Text)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="rentals")
    rental_items = relationship(
        "RentalItem",
        back_populates="rental",
        cascade="all, delete-orphan",
        order_by="RentalItem.position",
    )

    @property
    def total_amount(self) -> Decimal:
        return (
            Decimal(self.total_rental_price or 0)
            + Decimal(self.late_fee or 0)
            + Decimal(self.damage_fee or 0)
        )


class RentalItem(Base):
    __tablename__ = "rental_items"
    __table_args__ = (
        _in_check("condition_before", ToyCondition, "ck_rental_items_condition_before"),
        _in_check("condition_after", ReturnCondition, "ck_rental_items_condition_after"),
        _in_check("status", RentalItemStatus, "ck_rental_items_status"),
        CheckConstraint("quantity >= 1", name="ck_rental_items_quantity_positive"),
        CheckConstraint("damage_fee >= 0", name="ck_rental_items_damage_fee_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    rental_id = Column(Uuid, ForeignKey("rentals.id", ondelete="CASCADE"), nullable=False, index=True)
    toy_id = Column(Uuid, ForeignKey("toys.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    quantity = Column(Integer, nullable=False, default=1)
    price_per_unit = Column(Numeric(10, 2), nullable=False)
    condition_before = Column(String(50), nullable=False)
    condition_after = Column(String(50))
    damage_description = Column(Text)
    damage_fee = Column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    status = Column(String(50), nullable=False, default=RentalItemStatus.RENTED.value)

    rental = relationship("Rental", back_populates="rental_items")
    toy = relationship("Toy", back_populates="rental_items")

    @property
    def subtotal(self) -> Decimal:
        return Decimal(self.price_per_unit or 0) * int(self.quantity or 0)
