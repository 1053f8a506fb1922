#!/usr/bin/env python3
"""Create the CareBridge schema and seed default accounts."""

from __future__ import annotations

import argparse
import os
import sys
from typing import Dict, List, Tuple

from sqlalchemy import select

from carebridge.auth import register_user
from carebridge.db import Database, DatabaseSettings, create_engine_from_settings, get_database_settings
from carebridge.db.models import User


DEFAULT_ADMIN = {
    "username": "admin",
    "email": "admin@carebridge.example",
    "password": "Admin123!",
    "role": "admin",
}

DEFAULT_CLINICIAN = {
    "username": "clinician",
    "email": "clinician@carebridge.example",
    "password": "Clinician123!",
    "role": "clinician",
}

USER_ENV_VARS = {
    "admin": ("CAREBRIDGE_ADMIN_USERNAME", "CAREBRIDGE_ADMIN_PASSWORD"),
    "clinician": ("CAREBRIDGE_CLINICIAN_USERNAME", "CAREBRIDGE_CLINICIAN_PASSWORD"),
}


def _resolve_user_spec(role: str, args: argparse.Namespace) -> Dict[str, str]:
    if role == "admin":
        base = dict(DEFAULT_ADMIN)
        override_user = args.admin_username or os.getenv(USER_ENV_VARS[role][0])
        override_pass = args.admin_password or os.getenv(USER_ENV_VARS[role][1])
    else:
        base = dict(DEFAULT_CLINICIAN)
        override_user = args.clinician_username or os.getenv(USER_ENV_VARS[role][0])
        override_pass = args.clinician_password or os.getenv(USER_ENV_VARS[role][1])

    if override_user:
        base["username"] = override_user
        base["email"] = override_user if "@" in override_user else f"{override_user}@carebridge.example"
    if override_pass:
        base["password"] = override_pass
    return base


def seed_default_users(database: Database, args: argparse.Namespace) -> List[Tuple[str, str, str]]:
    created: List[Tuple[str, str, str]] = []
    with database.session_scope() as session:
        for role in ("admin", "clinician"):
            spec = _resolve_user_spec(role, args)
            existing = session.execute(
                select(User).where(User.username == spec["username"])
            ).scalars().first()
            if existing is not None:
                if existing.role != spec["role"]:
                    existing.role = spec["role"]
                continue
            register_user(session, spec["username"], spec["email"], spec["password"], spec["role"])
            created.append((spec["username"], spec["password"], spec["role"]))
    return created


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the CareBridge schema and seed default accounts.",
    )
    parser.add_argument(
        "--database-url",
        "-d",
        default=None,
        help="SQLAlchemy URL (default: CAREBRIDGE_DATABASE_URL or the per-user SQLite file)",
    )
    parser.add_argument(
        "--skip-user-seed",
        action="store_true",
        help="Do not create default admin/clinician accounts.",
    )
    parser.add_argument("--admin-username", help="Override admin username for the seeded account")
    parser.add_argument("--admin-password", help="Override admin password for the seeded account")
    parser.add_argument("--clinician-username", help="Override clinician username for the seeded account")
    parser.add_argument("--clinician-password", help="Override clinician password for the seeded account")
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    settings = DatabaseSettings(url=args.database_url) if args.database_url else get_database_settings()
    database = Database(create_engine_from_settings(settings))
    database.create_all()

    created_users: List[Tuple[str, str, str]] = []
    if not args.skip_user_seed:
        created_users = seed_default_users(database, args)

    print(f"Database initialised at {settings.url}")
    if args.skip_user_seed:
        print("User seeding skipped.")
    elif created_users:
        print("Created the following default accounts (update credentials before production use):")
        for username, password, role in created_users:
            print(f"  - {role}: {username} / {password}")
    else:
        print("Default accounts already present; no changes made.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
