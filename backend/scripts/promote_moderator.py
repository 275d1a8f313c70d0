"""CLI script to grant (or revoke) the moderator role.
Usage: python scripts/promote_moderator.py USERNAME [--revoke]
"""
import sys
import argparse
import pathlib
# Ensure `backend/` is on sys.path so `chrono` package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from chrono.database import engine, create_db_and_tables
from chrono import repositories


def main(username: str, revoke: bool = False) -> int:
    """Set `is_moderator` on an existing user and print the outcome."""
    create_db_and_tables()
    with Session(engine) as session:
        repo = repositories.UserRepository(session)
        user = repo.get_by_username(username)
        if not user:
            print(f'User not found: {username}')
            return 1
        repo.set_moderator(user, not revoke)
        print(f'{username}: is_moderator={user.is_moderator}')
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('username')
    parser.add_argument('--revoke', action='store_true', help='Remove the moderator role instead of granting it')
    args = parser.parse_args()
    sys.exit(main(args.username, revoke=args.revoke))
