"""Per-request caller identity resolved by the access guard."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict

SCOPE_DASHBOARD_READ = "rcm:dashboard:read"
SCOPE_GATEWAYS_READ = "rcm:gateways:read"
SCOPE_GATEWAYS_WRITE = "rcm:gateways:write"
SCOPE_PAYMENTS_READ = "rcm:payments:read"
SCOPE_PAYMENTS_WRITE = "rcm:payments:write"
SCOPE_PAYMENTS_REFUND = "rcm:payments:refund"
SCOPE_CLAIMS_WRITE = "rcm:claims:write"
SCOPE_CACHE_ADMIN = "rcm:cache:admin"

ALL_SCOPES = (
    SCOPE_DASHBOARD_READ,
    SCOPE_GATEWAYS_READ,
    SCOPE_GATEWAYS_WRITE,
    SCOPE_PAYMENTS_READ,
    SCOPE_PAYMENTS_WRITE,
    SCOPE_PAYMENTS_REFUND,
    SCOPE_CLAIMS_WRITE,
    SCOPE_CACHE_ADMIN,
)


class AuthContext(BaseModel):
    """Authenticated tenant/provider and what they may do. Lives for one request."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    provider_id: str
    subject: str
    scopes: frozenset[str]
    expires_at: datetime

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes
