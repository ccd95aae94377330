"""Shared fixtures: in-memory SQLite, sandbox gateway and token minting."""

import asyncio
import os
import time
from datetime import datetime, timedelta, timezone

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("KAFKA_ENABLED", "false")
os.environ.setdefault("TRACING_ENABLED", "false")

import jwt  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from rcmpay.common.config import settings  # noqa: E402
from rcmpay.common.db import build_engine, build_session_factory, create_schema  # noqa: E402
from rcmpay.services.api.app import create_app  # noqa: E402
from rcmpay.services.api.container import build_container  # noqa: E402
from rcmpay.services.auth.schemas import ALL_SCOPES, AuthContext  # noqa: E402
from rcmpay.services.cache.store import MemoryCacheStore  # noqa: E402
from rcmpay.services.gateways.adapters import SandboxLedger  # noqa: E402
from rcmpay.services.gateways.schemas import GatewayConfigureRequest  # noqa: E402

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"


def make_ctx(tenant_id: str = TENANT_A, scopes=ALL_SCOPES) -> AuthContext:
    return AuthContext(
        tenant_id=tenant_id,
        provider_id=f"{tenant_id}-provider",
        subject=f"{tenant_id}-user",
        scopes=frozenset(scopes),
        expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )


def make_token(
    tenant_id: str | None = TENANT_A,
    scopes=ALL_SCOPES,
    ttl_seconds: int = 3600,
    secret: str | None = None,
    audience: str | None = None,
) -> str:
    now = int(time.time())
    claims = {
        "sub": f"{tenant_id}-user",
        "scope": " ".join(scopes),
        "iss": settings.jwt_issuer,
        "aud": audience or settings.jwt_audience,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    if tenant_id is not None:
        claims["tenant_id"] = tenant_id
    return jwt.encode(claims, secret or settings.jwt_secret.get_secret_value(), algorithm="HS256")


def auth_header(tenant_id: str = TENANT_A, scopes=ALL_SCOPES) -> dict:
    return {"Authorization": f"Bearer {make_token(tenant_id, scopes)}"}


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def session_factory():
    engine = build_engine("sqlite:///:memory:")
    create_schema(engine, retries=1)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def ledger():
    return SandboxLedger()


@pytest.fixture
def container(session_factory, ledger):
    return build_container(
        session_factory=session_factory,
        cache_store=MemoryCacheStore(),
        sandbox_ledger=ledger,
        gateway_max_attempts=3,
        gateway_backoff_base_seconds=0,
        gateway_timeout_seconds=2,
        publish_events=True,
    )


@pytest.fixture
def configure_sandbox(container):
    """Configure the sandbox gateway as a tenant's default."""

    def configure(tenant_id: str = TENANT_A, **fields):
        req = GatewayConfigureRequest(provider_id="sandbox", is_default=True, is_sandbox=True, **fields)
        return run(container.registry.configure(make_ctx(tenant_id), req))

    return configure


@pytest.fixture
def client(container):
    with TestClient(create_app(container, start_workers=False)) as test_client:
        yield test_client
