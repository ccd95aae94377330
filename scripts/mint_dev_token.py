"""Mint a development bearer token for the RCM API.

Signs with the same HS256 secret/issuer/audience the service validates, so
only use it against local or staging deployments.
"""

import argparse
import os
import time

import jwt

DEFAULT_SCOPES = [
    "rcm:dashboard:read",
    "rcm:gateways:read",
    "rcm:gateways:write",
    "rcm:payments:read",
    "rcm:payments:write",
    "rcm:payments:refund",
    "rcm:claims:write",
    "rcm:cache:admin",
]


def mint(
    secret: str,
    tenant_id: str,
    subject: str,
    scopes: list[str],
    issuer: str,
    audience: str,
    ttl_seconds: int,
    provider_id: str | None = None,
) -> str:
    """Return one signed token carrying tenant, provider and scopes."""

    now = int(time.time())
    claims = {
        "sub": subject,
        "tenant_id": tenant_id,
        "scope": " ".join(scopes),
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    if provider_id:
        claims["provider_id"] = provider_id
    return jwt.encode(claims, secret, algorithm="HS256")


def main() -> None:
    parser = argparse.ArgumentParser(description="Mint a development RCM bearer token.")
    parser.add_argument("--tenant", required=True)
    parser.add_argument("--subject", default="dev-user")
    parser.add_argument("--provider-id", default=None)
    parser.add_argument("--scope", action="append", dest="scopes", help="Repeat per scope (default: all)")
    parser.add_argument("--ttl", type=int, default=3600)
    parser.add_argument("--issuer", default=os.getenv("JWT_ISSUER", "rcm-identity"))
    parser.add_argument("--audience", default=os.getenv("JWT_AUDIENCE", "rcm-api"))
    args = parser.parse_args()

    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise SystemExit("JWT_SECRET must be set")
    print(
        mint(
            secret,
            tenant_id=args.tenant,
            subject=args.subject,
            scopes=args.scopes or DEFAULT_SCOPES,
            issuer=args.issuer,
            audience=args.audience,
            ttl_seconds=args.ttl,
            provider_id=args.provider_id,
        )
    )


if __name__ == "__main__":
    main()
