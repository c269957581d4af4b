#!/usr/bin/env python3
"""Maintenance commands for the PersonaChat JSON store.

Usage:
    python scripts/db_utils.py init
    python scripts/db_utils.py stats
    python scripts/db_utils.py cleanup
    python scripts/db_utils.py backup [--dir ./backups]
    python scripts/db_utils.py restore ./backups/db-backup-2024-01-01T00-00-00-000000Z.json
    python scripts/db_utils.py deactivate-user user@example.com
    python scripts/db_utils.py delete-user user@example.com --yes

Environment Variables:
    DATA_DIR: Directory holding the store document (default ./data)
    DB_FILENAME: Store document name (default db.json)
    BACKUP_DIR: Default destination for backups (default ./backups)
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional, Sequence

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _open_store():
    # Import here so env vars set by the caller are seen by Settings
    from personachat.config import get_settings
    from personachat.storage.memory import MemoryStore

    settings = get_settings()
    return settings, MemoryStore(settings.data_dir, settings.db_filename)


def cmd_init(args: argparse.Namespace) -> int:
    _, store = _open_store()
    print(f"Store ready at {store.path}")
    print(f"  Users: {len(store.list_users(include_inactive=True))}")
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    _, store = _open_store()
    stats = store.user_stats()
    refresh_active = sum(1 for t in store.refresh_tokens if not t.is_revoked)
    refresh_total = len(store.refresh_tokens)
    reset_total = len(store.password_reset_tokens)
    verification_total = len(store.email_verification_tokens)
    print(f"Store: {store.path}")
    print(f"  Users: {stats.total} (active {stats.active}, verified {stats.verified}, locked {stats.locked})")
    print(f"  Refresh tokens: {refresh_total} (active {refresh_active})")
    print(f"  Password reset tokens: {reset_total}")
    print(f"  Email verification tokens: {verification_total}")
    return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
    _, store = _open_store()
    report = store.cleanup_expired_tokens()
    print(f"Removed {report.total} token(s)")
    print(f"  Refresh: {report.refresh_tokens}")
    print(f"  Password reset: {report.password_reset_tokens}")
    print(f"  Email verification: {report.email_verification_tokens}")
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    settings, store = _open_store()
    target = store.backup(args.dir or settings.backup_dir)
    print(f"Backup written to {target}")
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    source = Path(args.path)
    if not source.is_file():
        print(f"Error: backup not found: {source}")
        return 1
    settings, store = _open_store()
    if not args.yes:
        # Snapshot the live document so a bad restore can be undone
        safety = store.backup(settings.backup_dir)
        print(f"Current store saved to {safety}")
    store.restore(source)
    print(f"Restored {store.path} from {source}")
    return 0


def _find_user(store, email: str):
    from personachat.storage.models import normalize_email

    user = store.get_user_by_email(email)
    if user is None:
        # get_user_by_email skips deactivated accounts
        wanted = normalize_email(email)
        user = next(
            (u for u in store.list_users(include_inactive=True) if u.email == wanted), None
        )
    return user


def cmd_deactivate_user(args: argparse.Namespace) -> int:
    _, store = _open_store()
    user = store.get_user_by_email(args.email)
    if user is None:
        print(f"Error: no active user {args.email}")
        return 1
    store.deactivate_user(user.id)
    revoked = store.revoke_user_refresh_tokens(user.id)
    print(f"Deactivated {user.email} ({revoked} session(s) revoked)")
    return 0


def cmd_delete_user(args: argparse.Namespace) -> int:
    _, store = _open_store()
    user = _find_user(store, args.email)
    if user is None:
        print(f"Error: no user {args.email}")
        return 1
    if not args.yes:
        print(f"Refusing to delete {user.email} without --yes")
        return 1
    store.delete_user(user.id)
    print(f"Deleted {user.email} and all of its tokens")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="PersonaChat store maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="Create the store document if missing").set_defaults(func=cmd_init)
    sub.add_parser("stats", help="Print user and token counts").set_defaults(func=cmd_stats)
    sub.add_parser(
        "cleanup", help="Delete expired, revoked and consumed tokens"
    ).set_defaults(func=cmd_cleanup)

    backup = sub.add_parser("backup", help="Copy the store document to a timestamped file")
    backup.add_argument("--dir", default=None, help="Backup directory (or set BACKUP_DIR)")
    backup.set_defaults(func=cmd_backup)

    restore = sub.add_parser("restore", help="Replace the store document with a backup")
    restore.add_argument("path", help="Backup file to restore")
    restore.add_argument(
        "--yes",
        action="store_true",
        help="Skip the safety backup of the current document",
    )
    restore.set_defaults(func=cmd_restore)

    deactivate = sub.add_parser(
        "deactivate-user", help="Disable an account and revoke its sessions"
    )
    deactivate.add_argument("email")
    deactivate.set_defaults(func=cmd_deactivate_user)

    delete = sub.add_parser("delete-user", help="Remove an account and all of its tokens")
    delete.add_argument("email")
    delete.add_argument("--yes", action="store_true", help="Confirm the deletion")
    delete.set_defaults(func=cmd_delete_user)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except Exception as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
