from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone

import jwt


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate a federated id token accepted by /auth/sign-in/federated."
    )
    parser.add_argument("--secret", required=True, help="Value of FEDERATED_TOKEN_SECRET.")
    parser.add_argument("--subject", required=True, help="Provider account id.")
    parser.add_argument("--email", required=True)
    parser.add_argument("--name", default="")
    parser.add_argument("--minutes", type=int, default=10)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    payload = {
        "sub": args.subject,
        "email": args.email,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=args.minutes),
    }
    if args.name:
        payload["name"] = args.name
    token = jwt.encode(payload, args.secret, algorithm=args.algorithm)
    print(token)


if __name__ == "__main__":
    main()
