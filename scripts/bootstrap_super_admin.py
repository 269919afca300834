#!/usr/bin/env python3
"""Bootstrap a super admin for an operator tenant.

Usage:
    # Using environment variables:
    SUPER_ADMIN_EMAIL=ops@example.dk SUPER_ADMIN_PASSWORD='Str0ng!Pass' python scripts/bootstrap_super_admin.py

    # Or with command line args:
    python scripts/bootstrap_super_admin.py --tenant platform --email ops@example.dk --password 'Str0ng!Pass'

Environment Variables:
    SUPER_ADMIN_EMAIL: Email for the super admin
    SUPER_ADMIN_PASSWORD: Password for the super admin (checked against the password policy)
    SUPER_ADMIN_TENANT: Tenant the super admin belongs to (default: platform)
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_super_admin(tenant_id: str, email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote a super admin.

    Returns:
        dict with principal_id, email, and status ('created', 'promoted', 'unchanged' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from clubauth.service.runtime import get_runtime

    runtime = get_runtime()

    if dry_run:
        existing = runtime.store.find_admin_by_email(tenant_id, email.lower())
        if existing is None:
            print(f"[DRY RUN] Would create super admin {email} in tenant {tenant_id}")
        else:
            print(f"[DRY RUN] Would promote {email} (id: {existing.id}) to super admin")
        return {"principal_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    principal, status = await runtime.platform.ensure_super_admin(
        tenant_id=tenant_id, email=email.lower(), password=password
    )
    return {"principal_id": principal.id, "email": principal.email, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a super admin for the club auth service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--tenant",
        default=os.environ.get("SUPER_ADMIN_TENANT", "platform"),
        help="Operator tenant id (or set SUPER_ADMIN_TENANT env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("SUPER_ADMIN_EMAIL"),
        help="Super admin email (or set SUPER_ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("SUPER_ADMIN_PASSWORD"),
        help="Super admin password (or set SUPER_ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or SUPER_ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or SUPER_ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/clubauth-bootstrap")
        os.environ.setdefault("TENANT_CONFIG_DIR", "/tmp/clubauth-bootstrap/tenants")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(bootstrap_super_admin(args.tenant, args.email, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nSuper admin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Principal ID: {result['principal_id']}")
    elif result["status"] == "promoted":
        print("\nExisting admin promoted to super admin!")
    elif result["status"] == "unchanged":
        print("\nNo changes needed - principal is already a super admin.")


if __name__ == "__main__":
    main()
