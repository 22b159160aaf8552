#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

try:
    from dotenv import load_dotenv

    load_dotenv()
except ImportError:
    pass

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))


ROLES = ["Super Admin", "Operation", "Customer Care"]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one StaffUsers record directly from terminal.",
    )
    parser.add_argument("--username", required=True, help="Login name (stored lower-case)")
    parser.add_argument("--role", choices=ROLES, default="Operation", help="Staff role")
    parser.add_argument("--display-name", default=None, help="Name shown in the staff console")
    parser.add_argument(
        "--password",
        default=None,
        help="Optional password to set. Omit to keep the existing password.",
    )
    parser.add_argument(
        "--deactivate",
        action="store_true",
        help="Disable sign-in for this user without deleting the record.",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("FLEET_RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to FLEET_RENTAL_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if not args.username.strip():
        parser.error("--username must not be blank")
    if not args.db_url:
        parser.error("Missing DB URL. Set FLEET_RENTAL_DB_URL or pass --db-url.")
    if args.password is not None and len(args.password.strip()) < 4:
        parser.error("--password must be at least 4 characters.")

    from db.base import Base
    from services.staff_access_service import upsert_staff_user

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    Base.metadata.create_all(engine, tables=[Base.metadata.tables["StaffUsers"]])
    session_factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)

    with session_factory() as db:
        user = upsert_staff_user(
            db,
            args.username,
            role=args.role,
            display_name=args.display_name,
            password=args.password,
        )
        if args.deactivate and user.IsActive:
            user.IsActive = False
            db.commit()

    has_password = bool(user.PasswordHash and user.PasswordSalt)
    print(
        f"OK username={user.Username} role={user.Role} active={bool(user.IsActive)} "
        f"has_password={has_password} updated_at={user.UpdatedAt}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
