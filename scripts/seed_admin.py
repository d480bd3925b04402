#!/usr/bin/env python3
"""Seed the LMS admin account.

Usage:
    # Using environment variables (or a .env file):
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secret123 python scripts/seed_admin.py

    # Or with command line args:
    python scripts/seed_admin.py --email admin@example.com --password Secret123

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def seed_admin(email: str, password: str, *, first_name: str, last_name: str) -> dict:
    """Create the admin when the email is free.

    Returns:
        dict with user_id, email and status ('created', 'already_admin' or 'email_taken')
    """
    # Import here so the env defaults below are in place before settings load
    from learnhub.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.credentials.find_by_email(email)
    if existing:
        status = "already_admin" if existing.role == "admin" else "email_taken"
        return {"user_id": existing.id, "email": existing.email, "status": status}

    user = runtime.auth.seed_admin(
        email, password, first_name=first_name, last_name=last_name
    )
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main() -> None:
    from dotenv import load_dotenv

    load_dotenv()
    parser = argparse.ArgumentParser(
        description="Seed the LearnHub admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    # Seeding never touches rate limits
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from learnhub.service.errors import ServiceError

    try:
        result = seed_admin(
            args.email,
            args.password,
            first_name=args.first_name,
            last_name=args.last_name,
        )
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)

    if result["status"] == "created":
        print("Admin user created successfully")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print("  Role: admin")
    elif result["status"] == "already_admin":
        print(f"Admin user already exists: {result['email']}")
    else:
        print(f"Error: {result['email']} is registered to a non-admin account")
        sys.exit(1)


if __name__ == "__main__":
    main()
