from __future__ import annotations

import argparse
from datetime import datetime, timedelta

import jwt

ROLES = ("admin", "marketer", "service")


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate JWT for Campaign Sender API roles.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--subject", required=True)
    parser.add_argument("--roles", required=True, help=f"Comma-separated roles: {', '.join(ROLES)}.")
    parser.add_argument("--email", default="", help="Default recipient for test emails.")
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    unknown = sorted(set(roles) - set(ROLES))
    if unknown:
        parser.error(f"unknown roles: {', '.join(unknown)}")

    payload = {
        "sub": args.subject,
        "roles": roles,
        "exp": datetime.utcnow() + timedelta(hours=args.hours),
    }
    if args.email.strip():
        payload["email"] = args.email.strip()
    token = jwt.encode(payload, args.secret, algorithm=args.algorithm)
    print(token)


if __name__ == "__main__":
    main()
