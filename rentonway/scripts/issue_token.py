#!/usr/bin/env python3
"""Issue a bearer token for local testing against the rentals API."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from services.identity_service import KNOWN_ROLES, create_session


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Print a signed bearer token for one caller identity.",
    )
    parser.add_argument("--id", type=int, required=True, help="Caller id (user, retailer or delivery partner)")
    parser.add_argument("--role", choices=sorted(KNOWN_ROLES), default="user", help="Caller role")
    parser.add_argument("--ttl", type=int, default=None, help="Lifetime in seconds; defaults to SESSION_TTL_SECONDS.")
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    if args.id <= 0:
        parser.error("--id must be > 0")
    if args.ttl is not None and args.ttl <= 0:
        parser.error("--ttl must be > 0")

    print(create_session({"id": args.id, "role": args.role}, ttl_seconds=args.ttl))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
