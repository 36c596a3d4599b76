#!/usr/bin/env python3
"""
Recreate the initial admin account.

Any existing auth user with the bootstrap email is removed (profile first),
then a fresh admin is created with a profile row. Needs PLATFORM_URL,
PLATFORM_SERVICE_KEY and DB_URI in the environment.
"""

import getpass
import sys

from clinic_portal.auth_client import AuthError, init_admin_client
from clinic_portal.config import BOOTSTRAP_ADMIN_EMAIL, MIN_PASSWORD_LENGTH
from clinic_portal.database import init_engine
from clinic_portal.provisioning import bootstrap_admin


def main():
    print("=" * 60)
    print("Bootstrap Admin")
    print("=" * 60)

    email = input(f"Admin email [{BOOTSTRAP_ADMIN_EMAIL}]: ").strip() or BOOTSTRAP_ADMIN_EMAIL
    password = getpass.getpass("Admin password: ")
    if len(password) < MIN_PASSWORD_LENGTH:
        print(f"[ERROR] Password must be at least {MIN_PASSWORD_LENGTH} characters.", file=sys.stderr)
        sys.exit(1)

    engine = init_engine()
    admin = init_admin_client()
    try:
        result = bootstrap_admin(admin, engine, password, email=email)
    except AuthError as e:
        print(f"[ERROR] {e.message}", file=sys.stderr)
        sys.exit(1)

    print(f"\n[provision] {result['message']}: {result['email']} ({result['user_id']})")


if __name__ == "__main__":
    main()
