import pytest

from conftest import TENANT_A, TENANT_B, make_ctx, make_token
from rcmpay.common.config import settings
from rcmpay.common.errors import InsufficientScope, InvalidToken, MissingToken, TenantMismatch
from rcmpay.services.auth.guard import AccessGuard
from rcmpay.services.auth.schemas import SCOPE_DASHBOARD_READ, SCOPE_PAYMENTS_REFUND


@pytest.fixture
def guard():
    return AccessGuard(
        settings.jwt_secret.get_secret_value(),
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
    )


def test_valid_token_resolves_tenant_and_scopes(guard):
    ctx = guard.authorize(f"Bearer {make_token(scopes=[SCOPE_DASHBOARD_READ])}", SCOPE_DASHBOARD_READ)

    assert ctx.tenant_id == TENANT_A
    assert ctx.scopes == frozenset({SCOPE_DASHBOARD_READ})
    # Without a provider claim the subject stands in.
    assert ctx.provider_id == ctx.subject == f"{TENANT_A}-user"


@pytest.mark.parametrize("header", [None, "", "   ", "Bearer", "Bearer   "])
def test_missing_token(guard, header):
    with pytest.raises(MissingToken):
        guard.authenticate(header)


@pytest.mark.parametrize(
    "token",
    [
        make_token(ttl_seconds=-60),
        make_token(secret="not-the-secret"),
        make_token(audience="someone-else"),
        make_token(tenant_id=None),
        "not.a.jwt",
    ],
)
def test_untrusted_tokens_are_rejected(guard, token):
    with pytest.raises(InvalidToken):
        guard.authenticate(f"Bearer {token}")


def test_non_bearer_scheme_is_rejected(guard):
    with pytest.raises(InvalidToken):
        guard.authenticate(f"Basic {make_token()}")


def test_missing_scope_is_forbidden(guard):
    token = make_token(scopes=[SCOPE_DASHBOARD_READ])

    with pytest.raises(InsufficientScope) as excinfo:
        guard.authorize(f"Bearer {token}", SCOPE_PAYMENTS_REFUND)
    assert excinfo.value.status_code == 403


def test_ensure_tenant():
    AccessGuard.ensure_tenant(make_ctx(TENANT_A), TENANT_A)

    with pytest.raises(TenantMismatch):
        AccessGuard.ensure_tenant(make_ctx(TENANT_A), TENANT_B)
