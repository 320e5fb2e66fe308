"""Print an App Store Connect JWT built from the environment configuration."""

from __future__ import annotations

import argparse
import sys
from typing import List, Optional

import jwt
from dotenv import load_dotenv

from apple_store import AppleStoreClient, AppleStoreConfigError


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate a JWT for the App Store Connect API using environment configuration."
    )
    parser.add_argument(
        "--show-claims",
        action="store_true",
        help="Print the token's header and claims to stderr after the token.",
    )
    args = parser.parse_args(argv)

    load_dotenv()

    try:
        client = AppleStoreClient.from_env()
        token = client.generate_jwt(force_refresh=True)
    except AppleStoreConfigError as exc:
        print(f"환경 구성이 올바르지 않습니다: {exc}", file=sys.stderr)
        return 1

    print(token)
    if args.show_claims:
        print(f"header: {jwt.get_unverified_header(token)}", file=sys.stderr)
        print(f"claims: {jwt.decode(token, options={'verify_signature': False})}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
