#!/usr/bin/env python3
"""
Create the first admin account (uses auth.admin_username / admin_default_password
from config when no flags are given and no user exists yet).

Usage:
    python scripts/20_bootstrap_admin.py
    python scripts/20_bootstrap_admin.py --username admin --password mypass
"""

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config.settings import settings
from src.auth.users import create_user, list_users
from src.core.errors import ValidationError
from src.db.engine import init_db


def main():
    parser = argparse.ArgumentParser(description="Bootstrap first admin user")
    parser.add_argument("--username", default=None, help="Admin username (default: from config)")
    parser.add_argument("--password", default=None, help="Admin password (default: from config)")
    args = parser.parse_args()

    init_db()
    users = list_users()
    if users:
        print(f"Users already exist ({len(users)}). Use an admin token with POST /admin/users.")
        return

    username = args.username or settings.auth.admin_username
    password = args.password or settings.auth.admin_default_password
    if not username or not password:
        print("Error: username and password required (set in config or --username/--password)")
        sys.exit(1)

    try:
        create_user(user_id=username, password=password, role="admin")
    except ValidationError as e:
        print(f"Error: {e.message}")
        sys.exit(1)
    print(f"Created admin user: {username}")
    print("Login: POST /auth/login with body {\"user_id\": \"%s\", \"password\": \"...\"}" % username)


if __name__ == "__main__":
    main()
