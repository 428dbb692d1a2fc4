from __future__ import annotations

import argparse

from smsrelay.core.config import settings
from smsrelay.core.security import OPERATOR_ROLES, create_operator_token


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mint a bearer token for the operator API")
    parser.add_argument("email")
    parser.add_argument("--role", default="OPERATOR", choices=OPERATOR_ROLES)
    parser.add_argument("--ttl-minutes", type=int, default=settings.OPERATOR_JWT_TTL_MINUTES)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    print(create_operator_token(args.email, args.role, settings.OPERATOR_JWT_SECRET, args.ttl_minutes))


if __name__ == "__main__":
    main()
