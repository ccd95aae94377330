"""Explicit component wiring for the RCM service.

Everything the HTTP layer needs is built here once per process and handed to
`create_app`; tests build their own container around an in-memory database.
"""

from dataclasses import dataclass

import httpx

from rcmpay.common.config import settings
from rcmpay.common.db import build_engine, build_session_factory
from rcmpay.common.events import KafkaBus
from rcmpay.common.outbox import OutboxRelay
from rcmpay.services.analytics.service import AnalyticsAggregator
from rcmpay.services.auth.guard import AccessGuard
from rcmpay.services.cache.service import CacheLayer
from rcmpay.services.cache.store import CacheStore, build_store
from rcmpay.services.gateways.adapters import AdapterFactory, GatewayRequestStore, SandboxLedger
from rcmpay.services.gateways.service import GatewayRegistry
from rcmpay.services.payments.models import OutboxEvent
from rcmpay.services.payments.service import PaymentOrchestrator


@dataclass
class Container:
    session_factory: object
    guard: AccessGuard
    cache: CacheLayer
    registry: GatewayRegistry
    orchestrator: PaymentOrchestrator
    aggregator: AnalyticsAggregator
    relay: OutboxRelay | None = None
    service_name: str = "rcm-service"


def build_container(
    session_factory=None,
    cache_store: CacheStore | None = None,
    sandbox_ledger: SandboxLedger | None = None,
    stripe_transport: httpx.AsyncBaseTransport | None = None,
    gateway_max_attempts: int | None = None,
    gateway_backoff_base_seconds: float | None = None,
    gateway_timeout_seconds: float | None = None,
    publish_events: bool | None = None,
) -> Container:
    """Build every component from `settings`, with optional overrides."""

    if session_factory is None:
        session_factory = build_session_factory(build_engine(settings.database_url))
    cache = CacheLayer(cache_store or build_store(settings.cache_backend, settings.redis_url))
    factory = AdapterFactory(
        GatewayRequestStore(session_factory),
        sandbox_ledger=sandbox_ledger,
        stripe_transport=stripe_transport,
    )
    registry = GatewayRegistry(session_factory, factory, cache, ttl_seconds=settings.cache_gateway_ttl_seconds)
    publish_events = settings.kafka_enabled if publish_events is None else publish_events
    orchestrator = PaymentOrchestrator(
        session_factory,
        registry,
        cache,
        service_name=settings.service_name,
        max_attempts=gateway_max_attempts,
        backoff_base_seconds=gateway_backoff_base_seconds,
        timeout_seconds=gateway_timeout_seconds,
        publish_events=publish_events,
    )
    aggregator = AnalyticsAggregator(
        session_factory,
        cache,
        ttl_seconds=settings.cache_default_ttl_seconds,
        service_name=settings.service_name,
    )
    guard = AccessGuard(
        settings.jwt_secret.get_secret_value(),
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        leeway_seconds=settings.jwt_leeway_seconds,
    )
    return Container(
        session_factory=session_factory,
        guard=guard,
        cache=cache,
        registry=registry,
        orchestrator=orchestrator,
        aggregator=aggregator,
        relay=OutboxRelay(session_factory, OutboxEvent, KafkaBus(), settings.service_name) if publish_events else None,
        service_name=settings.service_name,
    )
