#!/usr/bin/env python3
"""Create or promote an admin account directly against the database."""

from __future__ import annotations

import argparse
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from toy_rental.db.base import Base
from toy_rental.models.enums import UserRole
from toy_rental.services.user_service import find_user_by_email, register_user, set_password


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one admin user in the users table from the terminal.",
    )
    parser.add_argument("--email", required=True, help="Login email of the admin account")
    parser.add_argument(
        "--password",
        default=None,
        help="Password to set. Required for new accounts; omit to keep an existing password.",
    )
    parser.add_argument("--full-name", default="Administrator", help="Display name for new accounts")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("TOY_RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to TOY_RENTAL_DB_URL env var.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.db_url:
        parser.error("Missing DB URL. Set TOY_RENTAL_DB_URL or pass --db-url.")
    if args.password is not None and len(args.password.strip()) < 6:
        parser.error("--password must be at least 6 characters.")

    engine = create_engine(args.db_url, pool_pre_ping=True)
    Base.metadata.create_all(bind=engine)
    with Session(engine) as db:
        user = find_user_by_email(db, args.email)
        if user is None:
            if args.password is None:
                parser.error("--password is required when creating a new account.")
            user = register_user(
                db,
                email=args.email,
                password=args.password.strip(),
                full_name=args.full_name,
                role=UserRole.ADMIN.value,
            )
            action = "created"
        else:
            user.role = UserRole.ADMIN.value
            user.is_active = True
            if args.password is not None:
                set_password(user, args.password.strip())
            action = "updated"
        db.commit()
        print(f"OK {action} user_id={user.id} email={user.email} role={user.role}")
    engine.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
