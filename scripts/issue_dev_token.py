#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
from datetime import UTC, datetime, timedelta

import jwt


def main() -> int:
    parser = argparse.ArgumentParser(description="Mint an HS256 bearer token for a local subject.")
    parser.add_argument("--subject", required=True, help="Subject id placed in the sub claim.")
    parser.add_argument("--role", required=True, choices=["submitter", "reviewer"])
    parser.add_argument("--ttl-minutes", type=int, default=60)
    args = parser.parse_args()

    secret = os.environ.get("JWT_SHARED_SECRET", "").strip()
    if not secret:
        print(json.dumps({"success": False, "error": "JWT_SHARED_SECRET is not set"}, ensure_ascii=True))
        return 1

    now = datetime.now(UTC)
    claims: dict[str, object] = {
        "sub": args.subject,
        "role": args.role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=max(1, args.ttl_minutes))).timestamp()),
    }
    issuer = os.environ.get("JWT_ISSUER", "").strip()
    audience = os.environ.get("JWT_AUDIENCE", "").strip()
    if issuer:
        claims["iss"] = issuer
    if audience:
        claims["aud"] = audience
    token = jwt.encode(claims, secret, algorithm="HS256")
    print(json.dumps({"success": True, "token": token, "claims": claims}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
