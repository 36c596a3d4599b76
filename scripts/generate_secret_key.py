#!/usr/bin/env python3
"""
Generate the signing key for portal API tokens.
Run this and copy the output to your .env file.
"""

import secrets

if __name__ == "__main__":
    print("=" * 60)
    print("Portal Token Signing Key")
    print("=" * 60)
    print("\nTokens issued by /api/auth/login are HS256-signed with this key.")
    print("Rotating it signs every staff member out.\n")

    secret_key = secrets.token_hex(32)

    print(f"JWT_SECRET_KEY={secret_key}")
    print("\n" + "=" * 60)
    print("Copy the line above to your .env file")
    print("=" * 60)
