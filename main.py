#!/usr/bin/env python3
"""
AuthGate admin CLI -- manage users and groups in the local directory without
going through the HTTP API (for example to create the first Admin).

Usage:
  python main.py create-user alice --email alice@example.com --group Admin
  python main.py create-user bob --email bob@example.com --temporary
  python main.py add-group alice Moderator
  python main.py remove-group alice Moderator
  python main.py list-groups alice
  python main.py token alice

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the local directory (same as the server).
  KNOWN_GROUPS   Group vocabulary; group names outside it are rejected.
  SECRET_KEY     Signing key; `token` output only verifies against a server
                 sharing it.
  GROUP_SOURCE   Must be "directory": the local group table lives inside the
                 server process and cannot be edited from here.
"""

import argparse
import asyncio
import getpass
from typing import Optional

from api.main import build_auth_service
from auth.errors import AuthError
from auth.local_directory import LocalDirectory
from auth.service import AuthService
from core.config import get_settings


def _read_password(args: argparse.Namespace) -> str:
    if args.password:
        return args.password
    first = getpass.getpass("Password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        raise AuthError("Passwords do not match.")
    return first


async def _run(args: argparse.Namespace, service: AuthService) -> None:
    if args.command == "create-user":
        password = _read_password(args)
        principal = await service.register(
            args.username,
            args.email,
            password,
            temporary=args.temporary,
            groups=args.group or None,
        )
        groups = await service.list_groups_for_principal(principal.username)
        print(f"  Created {principal.username} ({principal.status.value}); groups: {', '.join(groups) or '-'}")
    elif args.command == "add-group":
        groups = await service.add_user_to_group(args.username, args.group)
        print(f"  {args.username}: {', '.join(groups) or '-'}")
    elif args.command == "remove-group":
        groups = await service.remove_user_from_group(args.username, args.group)
        print(f"  {args.username}: {', '.join(groups) or '-'}")
    elif args.command == "list-groups":
        await service.get_profile(args.username)
        groups = await service.list_groups_for_principal(args.username)
        print(f"  {args.username}: {', '.join(groups) or '-'}")
    elif args.command == "token":
        password = args.password or getpass.getpass("Password: ")
        result = await service.authenticate(args.username, password)
        print(result.require_token())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authgate",
        description="Manage AuthGate users and group memberships.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--database-url",
        default=None,
        metavar="URL",
        help="SQLAlchemy URL of the local directory (default: DATABASE_URL setting)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create a user")
    create.add_argument("username")
    create.add_argument("--email", default="", help="Email address")
    create.add_argument("--password", default=None, help="Password (prompted when omitted)")
    create.add_argument(
        "--group",
        action="append",
        metavar="GROUP",
        help="Initial group; repeat for several (default: DEFAULT_GROUP)",
    )
    create.add_argument(
        "--temporary",
        action="store_true",
        help="Treat the password as temporary; the first login must replace it",
    )

    for name, verb in (("add-group", "Add a user to a group"), ("remove-group", "Remove a user from a group")):
        cmd = sub.add_parser(name, help=verb)
        cmd.add_argument("username")
        cmd.add_argument("group")

    groups = sub.add_parser("list-groups", help="List a user's groups")
    groups.add_argument("username")

    token = sub.add_parser("token", help="Log in and print a bearer token (for scripting)")
    token.add_argument("username")
    token.add_argument("--password", default=None, help="Password (prompted when omitted)")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()

    if settings.group_source != "directory":
        print("  [!] GROUP_SOURCE=local: memberships live in the server process. Edit LOCAL_GROUP_SEED instead.")
        return 2

    directory = LocalDirectory(
        args.database_url or settings.database_url,
        challenge_ttl_seconds=settings.challenge_ttl_seconds,
        mfa_issuer=settings.mfa_issuer,
    )
    try:
        asyncio.run(_run(args, build_auth_service(settings, directory)))
    except AuthError as exc:
        print(f"  [!] {exc.client_message}")
        return 1
    finally:
        directory.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
