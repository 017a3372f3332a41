#!/usr/bin/env python3
"""
ALWR registry -- operator command line.

Usage:
  python main.py create-admin --email admin@example.org --password '...'
  python main.py create-admin --email root@example.org --password '...' --super
  python main.py unlock --email someone@example.org
  python main.py purge-sessions

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the registry database (default: local SQLite file)
  SECRET_KEY    Required unless DEBUG=true
"""

import argparse
import sys

from sqlalchemy.exc import IntegrityError

from audit.models import AuditAction
from audit.store import AuditStore
from audit.trail import AuditTrail
from auth.credentials import PASSWORD_RULE, hash_password, normalize_email, validate_email, validate_password
from auth.models import AccountStatus, Identity, Role
from auth.store import AuthStore
from core.config import get_settings

CLI_ACTOR = "cli"


def _open_stores() -> tuple[AuthStore, AuditTrail, AuditStore]:
    settings = get_settings()
    store = AuthStore(settings.database_url, settings.db_timeout_seconds)
    audit_store = AuditStore(settings.database_url, settings.db_timeout_seconds)
    return store, AuditTrail(audit_store), audit_store


def create_admin(store: AuthStore, audit: AuditTrail, email: str, password: str, super_admin: bool = False) -> int:
    """Create an active admin identity. Returns a process exit code."""
    email = normalize_email(email)
    if not validate_email(email):
        print(f"  [!] '{email}' is not a valid email address.")
        return 1
    if not validate_password(password):
        print(f"  [!] {PASSWORD_RULE}")
        return 1

    role = Role.super_admin if super_admin else Role.admin
    identity = Identity(
        email=email,
        hashed_password=hash_password(password),
        role=role,
        status=AccountStatus.active,
    )
    try:
        identity_id = store.create_identity(identity)
    except IntegrityError:
        print(f"  [!] An identity with email {email} already exists.")
        return 1

    audit.record(
        AuditAction.REGISTER,
        success=True,
        actor_name=CLI_ACTOR,
        resource_type="identity",
        resource_id=identity_id,
        details={"role": role.value, "via": "cli"},
    )
    print(f"  Created {role.value} {email} (id {identity_id}).")
    return 0


def unlock(store: AuthStore, audit: AuditTrail, email: str) -> int:
    """Clear the failed-login counter and lock for one identity."""
    identity = store.get_by_email(email)
    if identity is None:
        print(f"  [!] No identity with email {normalize_email(email)}.")
        return 1
    store.reset_failed_logins(identity.id)
    audit.record(
        AuditAction.ACCOUNT_UNLOCKED,
        success=True,
        actor_name=CLI_ACTOR,
        resource_type="identity",
        resource_id=identity.id,
        details={"previous_failed_attempts": identity.failed_login_attempts, "via": "cli"},
    )
    print(f"  Unlocked {identity.email}.")
    return 0


def purge_sessions(store: AuthStore) -> int:
    removed = store.purge_expired_sessions()
    resets = store.purge_expired_password_resets()
    print(f"  Removed {removed} expired session(s) and {resets} expired reset token(s).")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="alwr-registry",
        description="Operator tasks for the ALWR registry database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin --email admin@example.org --password 'correct horse'
  python main.py unlock --email someone@example.org
  python main.py purge-sessions
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_admin = sub.add_parser("create-admin", help="Create an active admin account")
    p_admin.add_argument("--email", required=True, help="Login email for the new admin")
    p_admin.add_argument("--password", required=True, help="Initial password")
    p_admin.add_argument("--super", action="store_true", help="Grant super_admin instead of admin")

    p_unlock = sub.add_parser("unlock", help="Clear a lockout")
    p_unlock.add_argument("--email", required=True, help="Email of the locked account")

    sub.add_parser("purge-sessions", help="Delete sessions past their absolute expiry")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    store, audit, audit_store = _open_stores()
    try:
        if args.command == "create-admin":
            return create_admin(store, audit, args.email, args.password, super_admin=args.super)
        if args.command == "unlock":
            return unlock(store, audit, args.email)
        return purge_sessions(store)
    finally:
        store.close()
        audit_store.close()


if __name__ == "__main__":
    sys.exit(main())
