"""CLI script to create an admin account.
Usage: python scripts/create_admin.py EMAIL PASSWORD
"""
import sys
import argparse
import pathlib
# Ensure `backend/` is on sys.path so `tutorhub` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from tutorhub.database import engine, create_db_and_tables
from tutorhub import services


def main(email: str, password: str):
    """Create the admin unless an account with `email` already exists."""
    create_db_and_tables()
    with Session(engine) as session:
        user = services.AuthService(session).ensure_admin(email, password)
        if user.role != 'ADMIN':
            print(f'{email} already exists with role {user.role}; not promoted')
            return
        print(f'Admin ready: {user.email} (id {user.id})')


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('email')
    parser.add_argument('password')
    args = parser.parse_args()
    main(args.email, args.password)
