import argparse
import sys
from dataclasses import replace
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from users_api.config import load_settings
from users_api.database import Database


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a user document")
    parser.add_argument("name", help="Display name for the user")
    parser.add_argument("email", help="Unique email address")
    parser.add_argument("--age", type=int, default=None, help="Age in years")
    parser.add_argument(
        "--role",
        dest="roles",
        action="append",
        default=[],
        help="Role to grant; repeat for several (defaults to 'user')",
    )
    parser.add_argument("--city", default=None, help="Address city")
    parser.add_argument("--zip", dest="zip_code", default=None, help="Address postal code")
    parser.add_argument(
        "--mongodb-uri",
        default=None,
        help="MongoDB connection string (defaults to MONGODB_URI or mongodb://localhost:27017/demoDB)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    settings = load_settings()
    if args.mongodb_uri:
        settings = replace(settings, mongodb_uri=args.mongodb_uri)

    address = None
    if args.city or args.zip_code:
        address = {"city": args.city, "zip": args.zip_code}

    database = Database.from_settings(settings)
    try:
        database.initialize()
        user = database.create_user(
            args.name,
            args.email,
            age=args.age,
            roles=args.roles,
            address=address,
        )
    except ValueError as exc:  # duplicates, bad age, etc.
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        database.close()

    print(f"Created user {user.id}: {user.name} <{user.email}> roles={','.join(user.roles)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
