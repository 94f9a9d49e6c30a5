#!/usr/bin/env python3
"""Create a user and optionally log in as them, for local setup and smoke tests.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=a@x.com BOOTSTRAP_PASSWORD=secret123 python scripts/bootstrap_user.py --login

    # Or with command line args:
    python scripts/bootstrap_user.py --email a@x.com --password secret123

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_user(email: str, password: str, login: bool = False) -> dict:
    """Sign up ``email`` unless it exists; log in when ``login`` is set.

    Returns:
        dict with user_id, email, status ('created' or 'exists') and tokens
    """
    # Import here to avoid loading config before env vars are set
    from authcore.service.errors import AlreadyExistsError
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        user = await runtime.auth.signup(email, password)
        status = "created"
    except AlreadyExistsError:
        user = await runtime.auth.by_email(email)
        status = "exists"

    result = {"user_id": user.id, "email": user.email, "status": status}
    if login:
        pair = await runtime.auth.login(email, password)
        result["access_token"] = pair.access_token
        result["access_expires_at"] = pair.access_expires_at.isoformat()
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a user for the auth core",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--login",
        action="store_true",
        help="Log in after sign-up and print the access token",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("REVOCATION_BACKEND", "memory")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(bootstrap_user(args.email, args.password, args.login))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print(f"\nCreated user {result['email']} (id: {result['user_id']})")
    else:
        print(f"\nUser {result['email']} already exists (id: {result['user_id']})")
    if result.get("access_token"):
        print(f"  Access Token: {result['access_token'][:50]}...")
        print(f"  Expires At: {result['access_expires_at']}")


if __name__ == "__main__":
    main()
