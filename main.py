#!/usr/bin/env python3
"""
Gatehouse -- session-based authentication gateway.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 3000
  python main.py serve --reload
  python main.py hash-password alice >> users.txt
  python main.py list-users

Environment variables (see core/config.py for the full list):
  DATABASE_URL           Session and user storage. Default: SQLite file in the project.
  GITHUB_CLIENT_ID       GitHub OAuth app credentials. Both or neither.
  GITHUB_CLIENT_SECRET
  CREDENTIALS_FILE       username:bcrypt-hash file for password login.
  DEBUG                  true for local development (session cookie without Secure).
"""

import argparse
import getpass
import sys

import uvicorn

from auth.passwords import hash_password
from auth.store import UserStore
from core.config import get_settings
from core.errors import StoreUnavailable


def _serve(args: argparse.Namespace) -> int:
    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _hash_password(args: argparse.Namespace) -> int:
    """Prompt twice for a password and print a credentials-file line."""
    if ":" in args.username:
        print("  [!] Usernames may not contain ':'.", file=sys.stderr)
        return 2
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.", file=sys.stderr)
        return 1
    if not password:
        print("  [!] Password must not be empty.", file=sys.stderr)
        return 1
    if len(password.encode("utf-8")) > 72:
        print("  [!] bcrypt accepts at most 72 bytes of password.", file=sys.stderr)
        return 1
    print(f"{args.username}:{hash_password(password)}")
    return 0


def _list_users(args: argparse.Namespace) -> int:
    """Print one line per provisioned user: id, provider reference, last login."""
    store = UserStore(args.database_url or get_settings().database_url)
    try:
        users = store.list_users()
    except StoreUnavailable as exc:
        print(f"  [!] {exc}", file=sys.stderr)
        return 1
    finally:
        store.close()
    if not users:
        print("  [*] No users provisioned yet.")
        return 0
    for user in users:
        print(f"{user.id:>5}  {user.username:<24} {user.credential_reference:<32} {user.last_login or '-'}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gatehouse",
        description="Session-based authentication gateway with GitHub OAuth and password login.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --port 3000
  DEBUG=true python main.py serve --reload
  python main.py hash-password alice >> users.txt
  python main.py list-users --database-url sqlite:///gatehouse.db
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=3000, help="Bind port (default: 3000)")
    serve.add_argument("--reload", action="store_true", help="Restart on code changes (development)")
    serve.set_defaults(func=_serve)

    hasher = sub.add_parser("hash-password", help="Print a username:hash line for CREDENTIALS_FILE")
    hasher.add_argument("username", help="Login name the line is for")
    hasher.set_defaults(func=_hash_password)

    lister = sub.add_parser("list-users", help="Show users provisioned by past logins")
    lister.add_argument("--database-url", help="Override DATABASE_URL")
    lister.set_defaults(func=_list_users)

    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
