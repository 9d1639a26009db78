#!/usr/bin/env python3
"""
RoleKeeper -- command-line administration.

Works directly on the configured database (DATABASE_URL), without the web
server running.

Usage:
  python main.py seed
  python main.py list-users
  python main.py list-roles
  python main.py create-role AUDITOR --description "Read-only auditor"
"""

import argparse
import sys

from accounts.seed import seed_defaults
from accounts.service import SYSTEM, AccountService
from auth.store import RoleStore, SessionStore, UserStore, open_engine
from core.config import get_settings
from core.errors import AccountError


def _service(database_url: str) -> AccountService:
    engine = open_engine(database_url)
    return AccountService(RoleStore(engine), UserStore(engine), SessionStore(engine))


def _cmd_seed(service: AccountService, args: argparse.Namespace) -> int:
    report = seed_defaults(service, get_settings())
    print(f"Roles created: {', '.join(report.roles_created) or 'none'}")
    print(f"Users created: {', '.join(report.users_created) or 'none'}")
    if report.users_skipped:
        print(f"  [!] Skipped (no password configured): {', '.join(report.users_skipped)}")
    return 0


def _cmd_list_users(service: AccountService, args: argparse.Namespace) -> int:
    users = service.list_users_with_roles()
    if not users:
        print("No users.")
        return 0
    print(f"{'ID':>4}  {'EMAIL':<32} {'NAME':<28} ROLES")
    for user in users:
        name = f"{user.first_name} {user.last_name}".strip()
        print(f"{user.id:>4}  {user.email:<32} {name:<28} {', '.join(user.role_names)}")
    return 0


def _cmd_list_roles(service: AccountService, args: argparse.Namespace) -> int:
    for role in service.list_roles():
        print(f"{role.id:>4}  {role.name:<16} {role.description}")
    return 0


def _cmd_create_role(service: AccountService, args: argparse.Namespace) -> int:
    role = service.create_role(args.name, SYSTEM, description=args.description)
    print(f"Created role {role.name} (id {role.id}).")
    return 0


_COMMANDS = {
    "seed": _cmd_seed,
    "list-users": _cmd_list_users,
    "list-roles": _cmd_list_roles,
    "create-role": _cmd_create_role,
}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="rolekeeper",
        description="Role-based user administration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed
  python main.py list-users
  DATABASE_URL=sqlite:///prod.db python main.py list-roles
  python main.py create-role AUDITOR --description "Read-only auditor"
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL from the environment)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.add_parser("seed", help="Create the default roles and seed accounts if missing")
    sub.add_parser("list-users", help="List users with their roles")
    sub.add_parser("list-roles", help="List roles")
    create = sub.add_parser("create-role", help="Create a new role")
    create.add_argument("name", metavar="NAME", help="Role name, e.g. AUDITOR (upper-cased)")
    create.add_argument("--description", default="", help="Free-text description")
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    service = _service(args.database_url or get_settings().database_url)
    try:
        return _COMMANDS[args.command](service, args)
    except AccountError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
