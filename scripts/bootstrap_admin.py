#!/usr/bin/env python3
"""Create the first admin account, or promote an existing user to admin.

    python scripts/bootstrap_admin.py --email admin@example.com --password 'S3cure-Passw0rd' --name Admin

Credentials may also come from ADMIN_EMAIL, ADMIN_PASSWORD and ADMIN_NAME.
Without DATABASE_URL the in-memory store is used, which only makes sense
for a dry run or a smoke test.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import string
import sys
from pathlib import Path

# Runs from a checkout, not an installed package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

_MIN_ADMIN_PASSWORD_LENGTH = 12


def validate_password(password: str) -> bool:
    """Admin passwords are stricter than the service minimum."""
    if len(password) < _MIN_ADMIN_PASSWORD_LENGTH:
        return False
    classes = (
        string.ascii_uppercase,
        string.ascii_lowercase,
        string.digits,
        string.punctuation,
    )
    return sum(any(c in chars for c in password) for chars in classes) >= 3


def _outcome(user_id, email: str, status: str) -> dict:
    return {"user_id": user_id, "email": email, "status": status}


async def bootstrap_admin(
    email: str, password: str, name: str = "Administrator", dry_run: bool = False
) -> dict:
    """Return ``{user_id, email, status}``; status is created, promoted, already_admin or dry_run."""
    # Deferred so the CLI can set environment variables before settings load
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    existing = await runtime.credentials.get_by_email(email)

    if existing and existing.role == "admin":
        return _outcome(existing.id, existing.email, "already_admin")
    if dry_run:
        return _outcome(existing.id if existing else None, email, "dry_run")
    if existing:
        await runtime.auth.set_user_role(existing.id, "admin")
        return _outcome(existing.id, existing.email, "promoted")

    result = await runtime.auth.register(email, password, name)
    user = await runtime.auth.set_user_role(result.user.id, "admin")
    # Nobody receives the registration session
    await runtime.auth.logout(user.id, result.session.id)
    return _outcome(user.id, user.email, "created")


_STATUS_MESSAGES = {
    "created": "Admin account created.",
    "promoted": "Existing account promoted to admin.",
    "already_admin": "Nothing to do; the account is already an admin.",
    "dry_run": "Dry run; no changes were made.",
}


def _prepare_environment() -> None:
    """Fill in what a one-off CLI run needs before the runtime is built."""
    if not os.environ.get("JWT_SECRET"):
        # Tokens minted here are discarded, so a throwaway secret is enough
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: DATABASE_URL is not set; using the in-memory store")
    # A single account change does not need the invalidation cache
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create or promote an authcore admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default=os.environ.get("ADMIN_NAME", "Administrator"))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="report the action without changing anything",
    )
    args = parser.parse_args(argv)
    if not args.email or not args.password:
        parser.error("--email and --password (or ADMIN_EMAIL/ADMIN_PASSWORD) are required")
    if not validate_password(args.password):
        parser.error(
            "password needs 12+ characters from at least 3 classes "
            "(upper, lower, digit, symbol)"
        )
    return args


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    _prepare_environment()
    try:
        result = asyncio.run(
            bootstrap_admin(args.email, args.password, args.name, args.dry_run)
        )
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(_STATUS_MESSAGES[result["status"]])
    if result["user_id"]:
        print(f"  {result['email']} (id: {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
