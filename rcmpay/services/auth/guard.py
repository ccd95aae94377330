"""Bearer-token validation and tenant scoping.

Tokens are HS256 JWTs issued by the external identity provider. Required
claims: `sub`, `exp`, `iat`, `tenant_id`; scopes come from the OAuth2-style
space-delimited `scope` claim (or a `scopes` list). `provider_id` defaults to
`sub` when absent.
"""

from datetime import datetime, timezone

import jwt

from rcmpay.common.errors import AuthError, InsufficientScope, InvalidToken, MissingToken, TenantMismatch
from rcmpay.common.logging import logger, tenant_id_ctx
from rcmpay.common.metrics import auth_failures_total
from rcmpay.services.auth.schemas import AuthContext

ALGORITHMS = ["HS256"]


def _parse_scopes(claims: dict) -> frozenset[str]:
    raw = claims.get("scope")
    if raw is None:
        raw = claims.get("scopes", [])
    if isinstance(raw, str):
        return frozenset(part for part in raw.split() if part)
    if isinstance(raw, (list, tuple)) and all(isinstance(part, str) for part in raw):
        return frozenset(raw)
    raise InvalidToken("token scope claim is malformed")


class AccessGuard:
    """Resolves an `AuthContext` from the inbound authorization header."""

    def __init__(self, secret: str, issuer: str, audience: str, leeway_seconds: int = 0) -> None:
        self._secret = secret
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    def authenticate(self, authorization: str | None) -> AuthContext:
        try:
            return self._authenticate(authorization)
        except AuthError as exc:
            auth_failures_total.labels(kind=exc.kind).inc()
            raise

    def authorize(self, authorization: str | None, required_scope: str) -> AuthContext:
        """Authenticate and require one scope."""

        ctx = self.authenticate(authorization)
        if not ctx.has_scope(required_scope):
            auth_failures_total.labels(kind=InsufficientScope.kind).inc()
            logger.info("auth_denied tenant_id=%s missing_scope=%s", ctx.tenant_id, required_scope)
            raise InsufficientScope(f"token does not grant {required_scope}")
        tenant_id_ctx.set(ctx.tenant_id)
        return ctx

    @staticmethod
    def ensure_tenant(ctx: AuthContext, tenant_id: str) -> None:
        """Guard against reading or mutating another tenant's entity."""

        if ctx.tenant_id != tenant_id:
            auth_failures_total.labels(kind=TenantMismatch.kind).inc()
            logger.warning("tenant_mismatch caller_tenant=%s entity_tenant=%s", ctx.tenant_id, tenant_id)
            raise TenantMismatch()

    def _authenticate(self, authorization: str | None) -> AuthContext:
        if not authorization or not authorization.strip():
            raise MissingToken()
        scheme, _, token = authorization.strip().partition(" ")
        if scheme.lower() != "bearer":
            raise InvalidToken("authorization scheme must be Bearer")
        token = token.strip()
        if not token:
            raise MissingToken()

        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=ALGORITHMS,
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway_seconds,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise InvalidToken("bearer token has expired") from exc
        except jwt.PyJWTError as exc:
            raise InvalidToken() from exc

        tenant_id = claims.get("tenant_id")
        if not isinstance(tenant_id, str) or not tenant_id:
            raise InvalidToken("token carries no tenant")
        provider_id = claims.get("provider_id") or claims["sub"]
        return AuthContext(
            tenant_id=tenant_id,
            provider_id=str(provider_id),
            subject=str(claims["sub"]),
            scopes=_parse_scopes(claims),
            expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
        )
