#!/usr/bin/env python3
"""Generate a CIPHER_KEY for bearer tokens.

Usage:
    python scripts/generate_cipher_key.py
    python scripts/generate_cipher_key.py --env >> .env
    python scripts/generate_cipher_key.py --check "$CIPHER_KEY"
"""
from __future__ import annotations

import argparse
import base64
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def generate_key() -> str:
    from tokenauth.service.token import KEY_LENGTH

    return base64.b64encode(secrets.token_bytes(KEY_LENGTH)).decode("ascii")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Generate or check a tokenauth cipher key")
    parser.add_argument("--env", action="store_true", help="print as a CIPHER_KEY=... line")
    parser.add_argument("--check", metavar="KEY", help="validate an existing key instead")
    args = parser.parse_args(argv)

    if args.check is not None:
        from tokenauth.service.errors import ConfigError
        from tokenauth.service.token import load_cipher_key

        try:
            load_cipher_key(args.check)
        except ConfigError as exc:
            print(f"invalid: {exc}", file=sys.stderr)
            return 1
        print("ok")
        return 0

    key = generate_key()
    print(f"CIPHER_KEY={key}" if args.env else key)
    return 0


if __name__ == "__main__":
    sys.exit(main())
