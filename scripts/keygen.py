#!/usr/bin/env python3
"""
Gatekeeper Operator Key Generator

Generates a new operator bearer key with a `csrgk_` prefix and prints:
  - The raw key (give to the operator, store securely)
  - The SHA-256 fingerprint the gateway is configured with
  - A ready-to-paste environment line for the gateway process

Usage:  python scripts/keygen.py [operator_id]
        operator_id defaults to "human:operator"
"""

from __future__ import annotations

import secrets
import sys
from pathlib import Path

# Ensure project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from gatekeeper.identity import hash_api_key

KEY_PREFIX = "csrgk_"


def generate_key() -> str:
    """Return a prefixed key with 32 bytes of URL-safe randomness."""
    return KEY_PREFIX + secrets.token_urlsafe(32)


def main():
    operator_id = sys.argv[1] if len(sys.argv) > 1 else "human:operator"
    raw = generate_key()
    fp = hash_api_key(raw)

    print()
    print("=== Gatekeeper Operator Key ===")
    print()
    print(f"  Operator ID: {operator_id}")
    print(f"  Raw Key:     {raw}")
    print(f"  Fingerprint: {fp}")
    print()
    print("--- Gateway environment ---")
    print(f"OPERATOR_ID={operator_id}")
    print(f"OPERATOR_KEY_FINGERPRINT={fp}")
    print()


if __name__ == "__main__":
    main()
