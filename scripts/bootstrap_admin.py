#!/usr/bin/env python3
"""Create the first admin account, or promote an existing account to admin.

Examples:
    python scripts/bootstrap_admin.py --email ops@school.example --password 'long-passphrase'
    ADMIN_EMAIL=ops@school.example ADMIN_PASSWORD=... python scripts/bootstrap_admin.py --dry-run

Without DATABASE_URL the account lands in the JSON-backed memory store under
SHARED_FS_ROOT, which is only useful for local development.
"""
from __future__ import annotations

import argparse
import os
import sys


def bootstrap_admin(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # imported late so the env defaults set in main() apply
    from coursegate.service.auth import normalize_email
    from coursegate.service.passwords import validate_new_password
    from coursegate.service.roles import Role
    from coursegate.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.role == Role.ADMIN:
            print(f"{email} (id {existing.id}) is already an admin")
            return {"user_id": existing.id, "email": email, "status": "already_admin"}

        if dry_run:
            print(f"dry run: would promote {email} (id {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}

        runtime.store.update_role(existing.id, Role.ADMIN)
        runtime.audit.record(None, f"Bootstrap promoted user_id={existing.id} to admin")
        print(f"promoted {email} (id {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    validate_new_password(password)
    if dry_run:
        print(f"dry run: would create {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    account = runtime.store.create_account(
        name, email, runtime.passwords.hash(password), Role.ADMIN
    )
    backup = runtime.recovery.issue_backup_code(
        account.id, action="Generated backup code at registration"
    )
    runtime.audit.record(None, f"Bootstrap created admin user_id={account.id}")
    print(f"created {email} (id {account.id})")
    return {
        "user_id": account.id,
        "email": email,
        "status": "created",
        "backup_code": backup.code,
        "access_token": runtime.tokens.issue_access(account),
    }


_OUTCOME_MESSAGES = {
    "created": "Admin account created.",
    "promoted": "Existing account promoted to admin.",
    "already_admin": "Nothing to do: the account is already an admin.",
    "dry_run": "Dry run finished; nothing was written.",
}


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create or promote the first coursegate admin",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"), help="defaults to $ADMIN_EMAIL")
    parser.add_argument(
        "--password", default=os.environ.get("ADMIN_PASSWORD"), help="defaults to $ADMIN_PASSWORD"
    )
    parser.add_argument(
        "--name", default=os.environ.get("ADMIN_NAME", "Administrator"), help="defaults to $ADMIN_NAME"
    )
    parser.add_argument("--dry-run", action="store_true", help="report the outcome without writing")
    args = parser.parse_args(argv)

    missing = [flag for flag, value in (("--email", args.email), ("--password", args.password)) if not value]
    if missing:
        parser.error(f"missing {', '.join(missing)} (or the matching ADMIN_* environment variable)")
    return args


def main(argv=None) -> int:
    args = _parse_args(argv)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("DATABASE_URL is unset; writing to the in-memory store under SHARED_FS_ROOT")
    # the rate-limit cache is irrelevant to a one-shot script
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from coursegate.service.errors import ServiceError
    from coursegate.storage.errors import ConstraintViolation

    try:
        result = bootstrap_admin(args.email, args.password, args.name, args.dry_run)
    except (ServiceError, ConstraintViolation) as exc:
        print(f"bootstrap failed: {exc.message}", file=sys.stderr)
        return 1

    print(_OUTCOME_MESSAGES[result["status"]])
    if result["status"] == "created":
        # shown once; the backup code is the only way back in without the password
        print(f"  id={result['user_id']} email={result['email']}")
        print(f"  backup code: {result['backup_code']}")
        print(f"  access token: {result['access_token']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
