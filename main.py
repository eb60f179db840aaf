"""Command-line interface for the users API service."""

from __future__ import annotations
import argparse
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Sequence


def _running_in_virtualenv() -> bool:
    """Return ``True`` when the current interpreter is executing inside a venv."""

    base_prefix = getattr(sys, "base_prefix", sys.prefix)
    return sys.prefix != base_prefix


def _bootstrap_virtualenv() -> None:
    """Re-exec the script using the bundled virtualenv interpreter when available."""

    if _running_in_virtualenv():
        return

    root = Path(__file__).resolve().parent
    venv_dir = root / ".venv"
    if not venv_dir.is_dir():
        return

    candidates = (
        venv_dir / "bin" / "python",
        venv_dir / "bin" / "python3",
        venv_dir / "Scripts" / "python.exe",
        venv_dir / "Scripts" / "python",
    )

    script = str(Path(__file__).resolve())
    for candidate in candidates:
        if candidate.exists():
            os.execv(str(candidate), [str(candidate), script, *sys.argv[1:]])


if __name__ == "__main__":
    _bootstrap_virtualenv()

from users_api.config import Settings, load_settings
from users_api.database import Database, UserQuery

logger = logging.getLogger("usersapi.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Users API service utilities")
    parser.add_argument(
        "--mongodb-uri",
        default=None,
        help="MongoDB connection string (default: MONGODB_URI or mongodb://localhost:27017/demoDB)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML settings file (default: USERS_API_CONFIG or config/settings.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Create the indexes backing the users collection")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP users API")
    serve_parser.add_argument("--host", default=None, help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the HTTP API (default: PORT or 3000)",
    )

    list_parser = subparsers.add_parser("list-users", help="Print stored users")
    list_parser.add_argument("--limit", type=int, default=50, help="Maximum number of users to print")
    list_parser.add_argument("--role", default=None, help="Only print users holding this role")

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "list-users"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if not any(arg in known_commands for arg in args_list):
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = _insert_default_command(args_list)

    return parser.parse_args(args_list)


def _insert_default_command(args_list: list[str]) -> list[str]:
    """Place ``serve`` after any global options so its own flags parse correctly."""

    global_options = {"--mongodb-uri", "--config"}
    index = 0
    while index < len(args_list):
        arg = args_list[index]
        name = arg.split("=", 1)[0]
        if name not in global_options:
            break
        index += 1 if "=" in arg else 2
    return [*args_list[:index], "serve", *args_list[index:]]


def _resolve_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config).expanduser() if args.config else None
    settings = load_settings(config_path=config_path)
    if args.mongodb_uri:
        settings = replace(settings, mongodb_uri=args.mongodb_uri)
    if getattr(args, "host", None):
        settings = replace(settings, host=args.host)
    if getattr(args, "port", None):
        settings = replace(settings, port=args.port)
    return settings


def _serve(*, database: Database, settings: Settings) -> None:
    from users_api.service import create_app
    import uvicorn

    logger.info("Starting users API on http://%s:%s", settings.host, settings.port)

    app = create_app(database=database, settings=settings)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


def _list_users(database: Database, *, limit: int, role: str | None) -> None:
    users = database.list_users(UserQuery(limit=limit, role=role))
    if not users:
        print("No users are currently stored.")
        return

    print(f"{len(users)} user(s) found:")
    print(f"{'ID':<24}  {'Name':<24}  {'Email':<32}  Roles")
    print("-" * 100)
    for user in users:
        print(f"{user.id:<24}  {user.name:<24}  {user.email:<32}  {', '.join(user.roles)}")


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    args = _parse_args(argv)
    settings = _resolve_settings(args)

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    database = Database.from_settings(settings)

    if args.command == "serve":
        _serve(database=database, settings=settings)
        return

    try:
        if args.command == "init-db":
            database.initialize()
            print("Database initialisation complete.")
        elif args.command == "list-users":
            _list_users(database, limit=args.limit, role=args.role)
    finally:
        database.close()


if __name__ == "__main__":
    main()
