#!/usr/bin/env python3
"""Create or promote a super_admin in the configured user directory.

Usage:
    ADMIN_EMAIL=ops@example.com python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email ops@example.com --print-token

With IDENTITY_PROVIDER=local, --print-token mints a development ID token for
the admin that can be exchanged at POST /auth/session.

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

ADMIN_ROLE = "super_admin"


async def bootstrap_admin(
    runtime: Any,
    email: str,
    *,
    dry_run: bool = False,
    print_token: bool = False,
) -> Dict[str, Optional[str]]:
    """Create ``email`` as super_admin, or promote the existing user."""
    from benefitsai.config import IdentityProviderKind

    email = email.strip().lower()
    existing = runtime.store.get_user_by_email(email)
    result: Dict[str, Optional[str]] = {"email": email, "user_id": None, "token": None}

    if existing and existing.role == ADMIN_ROLE:
        result.update(user_id=existing.id, status="already_admin")
    elif dry_run:
        result.update(user_id=existing.id if existing else None, status="dry_run")
        return result
    elif existing:
        runtime.store.update_user_role(existing.id, ADMIN_ROLE)
        # Live sessions still carry the old role
        await runtime.auth.invalidate_sessions(existing.id)
        result.update(user_id=existing.id, status="promoted")
    else:
        user = runtime.store.create_user(email, role=ADMIN_ROLE)
        result.update(user_id=user.id, status="created")

    if print_token:
        if runtime.settings.identity_provider != IdentityProviderKind.LOCAL:
            raise RuntimeError("--print-token requires IDENTITY_PROVIDER=local")
        result["token"] = await runtime.identity_provider.mint_credential(
            result["user_id"], email=email
        )
    return result


async def _run(args: argparse.Namespace) -> Dict[str, Optional[str]]:
    from benefitsai.service.runtime import Runtime

    runtime = Runtime()
    try:
        return await bootstrap_admin(
            runtime, args.email, dry_run=args.dry_run, print_token=args.print_token
        )
    finally:
        await runtime.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Bootstrap a super_admin for the Benefits AI Assistant",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--print-token",
        action="store_true",
        help="Print a development ID token (local identity provider only)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(_run(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created super_admin {result['email']} (id: {result['user_id']})")
    elif status == "promoted":
        print(f"Promoted {result['email']} to super_admin (id: {result['user_id']})")
    elif status == "already_admin":
        print(f"{result['email']} is already a super_admin (id: {result['user_id']})")
    else:
        print(f"[DRY RUN] Would create or promote {result['email']}")
    if result.get("token"):
        print(f"ID token: {result['token']}")


if __name__ == "__main__":
    main()
