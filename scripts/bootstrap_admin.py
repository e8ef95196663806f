#!/usr/bin/env python3
"""Create or promote the first admin subject.

No HTTP route can grant the first admin flag, so this writes the subject
record straight to the configured store.

Usage:
    # Using environment variables:
    ADMIN_USER_ID=ops-admin-0001 ADMIN_EMAIL=ops@example.com python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --user-id ops-admin-0001 --email ops@example.com --issue-token

Environment Variables:
    ADMIN_USER_ID: Identity-provider subject id of the admin
    ADMIN_EMAIL: Email recorded on the subject (optional)
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_SUBJECT_ID_LENGTH = 10


def bootstrap_admin(
    user_id: str,
    email: Optional[str] = None,
    *,
    dry_run: bool = False,
    issue_token: bool = False,
    token_ttl_seconds: int = 3600,
) -> dict:
    """Ensure ``user_id`` exists with ``is_admin=True``.

    Returns:
        dict with user_id, email, status ('created', 'promoted',
        'already_admin' or 'dry_run') and, when requested, an access_token
    """
    # Import here to avoid loading config before env vars are set
    from chatwarden.service.identity import JWTIdentityProvider
    from chatwarden.service.runtime import get_runtime
    from chatwarden.storage.models import SUBJECTS, Subject

    runtime = get_runtime()
    existing = runtime.store.get(SUBJECTS, user_id)

    if existing and existing.get("is_admin") is True:
        status = "already_admin"
    elif dry_run:
        action = "promote existing" if existing else "create"
        print(f"[DRY RUN] Would {action} admin subject {user_id}")
        return {"user_id": user_id, "email": email, "status": "dry_run"}
    elif existing:
        runtime.store.update(SUBJECTS, user_id, {"is_admin": True})
        status = "promoted"
    else:
        subject = Subject(id=user_id, email=email or "", is_admin=True)
        runtime.store.create(SUBJECTS, subject.to_document(), key=subject.id)
        status = "created"

    result = {"user_id": user_id, "email": email, "status": status}
    if issue_token:
        provider = runtime.identity_provider
        if not isinstance(provider, JWTIdentityProvider):
            raise RuntimeError("--issue-token requires IDENTITY_BACKEND=jwt")
        result["access_token"] = provider.issue_token(
            user_id, email=email, ttl_seconds=token_ttl_seconds
        )
    return result


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin subject for Chatwarden",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--user-id",
        default=os.environ.get("ADMIN_USER_ID"),
        help="Subject id (or set ADMIN_USER_ID env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    parser.add_argument(
        "--issue-token",
        action="store_true",
        help="Print a signed token for the admin (JWT identity backend only)",
    )

    args = parser.parse_args(argv)

    if not args.user_id:
        print("Error: --user-id or ADMIN_USER_ID environment variable required")
        return 1
    if len(args.user_id) < MIN_SUBJECT_ID_LENGTH:
        print(f"Error: user id must be at least {MIN_SUBJECT_ID_LENGTH} characters")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/chatwarden-bootstrap")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(
            args.user_id,
            args.email,
            dry_run=args.dry_run,
            issue_token=args.issue_token,
        )
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print(f"Created admin subject {result['user_id']}")
    elif result["status"] == "promoted":
        print(f"Promoted existing subject {result['user_id']} to admin")
    elif result["status"] == "already_admin":
        print("No changes needed - subject is already an admin.")
    if result.get("access_token"):
        print(f"Access Token: {result['access_token']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
