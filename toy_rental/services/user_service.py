from __future__ import annotations

import hashlib
import hmac
import secrets

from sqlalchemy import select
from sqlalchemy.orm import Session

from toy_rental.models.enums import UserRole
from toy_rental.models.rental_models import Rental, User
from toy_rental.services.errors import AccountInUse, DuplicateAccount, InvalidCredentials

PBKDF2_ROUNDS = 120000


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        (password or "").encode("utf-8"),
        salt.encode("utf-8"),
        PBKDF2_ROUNDS,
    )
    return raw.hex()


def _normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def set_password(user: User, password: str) -> None:
    salt = secrets.token_hex(16)
    user.password_salt = salt
    user.password_hash = _password_hash(password, salt)


def verify_password(user: User, password: str) -> bool:
    if not user.password_hash or not user.password_salt:
        return False
    candidate = _password_hash(password, user.password_salt)
    return hmac.compare_digest(candidate, user.password_hash)


def find_user_by_email(db: Session, email: str) -> User | None:
    return db.execute(select(User).where(User.email == _normalize_email(email))).scalars().first()


def register_user(
    db: Session,
    *,
    email: str,
    password: str,
    full_name: str,
    phone_number: str | None = None,
    address: str | None = None,
    role: str = UserRole.CUSTOMER.value,
) -> User:
    if find_user_by_email(db, email) is not None:
        raise DuplicateAccount("Email is already registered.")
    user = User(
        email=_normalize_email(email),
        full_name=full_name.strip(),
        phone_number=phone_number,
        address=address,
        role=role,
        is_active=True,
    )
    set_password(user, password)
    db.add(user)
    db.flush()
    return user


def authenticate(db: Session, email: str, password: str) -> User:
    user = find_user_by_email(db, email)
    if user is None or not user.is_active or not verify_password(user, password):
        raise InvalidCredentials("Invalid credentials.")
    return user


_PROFILE_FIELDS = ("full_name", "phone_number", "address")


def update_profile(db: Session, user: User, fields: dict) -> User:
    for name in _PROFILE_FIELDS:
        if fields.get(name) is not None:
            value = fields[name].strip() if name == "full_name" else fields[name]
            setattr(user, name, value)
    db.flush()
    return user


def delete_account(db: Session, user: User) -> None:
    """Remove the user and their sessions. Accounts with rentals are kept."""
    has_rentals = db.execute(select(Rental.id).where(Rental.user_id == user.id).limit(1)).first() is not None
    if has_rentals:
        raise AccountInUse("Account has rental history.")
    db.delete(user)
    db.flush()


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "phone_number": user.phone_number,
        "address": user.address,
        "is_active": bool(user.is_active),
        "role": user.role,
    }
