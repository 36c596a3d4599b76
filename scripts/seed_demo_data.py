#!/usr/bin/env python3
"""
Fill a local development database with synthetic clinic data.

Uses DB_URI from the environment. Pass --create-schema for a fresh SQLite
file; hosted databases already have their tables.
"""

import sys

from clinic_portal.database import create_schema, init_engine
from clinic_portal.demo_data import seed_demo_data


def main():
    print("=" * 60)
    print("Seed Demo Data")
    print("=" * 60)

    engine = init_engine()
    if "--create-schema" in sys.argv[1:]:
        create_schema(engine)
        print("[init] Schema created.")

    counts = seed_demo_data(engine)
    print(f"\nSeeded {counts['clinics']} clinics and {counts['patients']} patients.")


if __name__ == "__main__":
    main()
