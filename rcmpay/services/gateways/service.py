"""Gateway registry: per-tenant adapter configuration, selection and dispatch.

All external payment-provider calls go through `GatewayRegistry.dispatch`, which
checks the capability set before the adapter is invoked.
"""

from sqlalchemy import select

from rcmpay.common.errors import GatewayError, GatewayMisconfigured, GatewayNotConfigured, UnsupportedOperation
from rcmpay.common.logging import logger
from rcmpay.common.metrics import gateway_calls_total
from rcmpay.common.tracing import tracer
from rcmpay.services.auth.schemas import AuthContext
from rcmpay.services.cache.service import SCOPE_GATEWAYS, CacheKey, CacheLayer
from rcmpay.services.gateways.adapters import AdapterFactory, GatewayAdapter, validate_credentials_ref
from rcmpay.services.gateways.models import GatewayConfigRecord
from rcmpay.services.gateways.schemas import (
    ALL_CAPABILITIES,
    GatewayConfig,
    GatewayConfigureRequest,
    GatewayConfigView,
)


def _to_config(record: GatewayConfigRecord) -> GatewayConfig:
    return GatewayConfig(
        tenant_id=record.tenant_id,
        gateway_id=record.gateway_id,
        display_name=record.display_name,
        credentials_ref=record.credentials_ref,
        capabilities=list(record.capabilities or []),
        options=dict(record.options or {}),
        enabled=record.enabled,
        is_default=record.is_default,
        is_sandbox=record.is_sandbox,
    )


class GatewayRegistry:
    """Holds configured adapters per tenant and selects the active one."""

    def __init__(
        self,
        session_factory,
        factory: AdapterFactory,
        cache: CacheLayer,
        ttl_seconds: float = 600,
    ) -> None:
        self.session_factory = session_factory
        self.factory = factory
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    def _load_configs(self, tenant_id: str) -> list[GatewayConfig]:
        with self.session_factory() as db:
            records = db.execute(
                select(GatewayConfigRecord)
                .where(GatewayConfigRecord.tenant_id == tenant_id)
                .order_by(GatewayConfigRecord.gateway_id)
            ).scalars().all()
            return [_to_config(record) for record in records]

    async def configs(self, tenant_id: str) -> list[GatewayConfig]:
        """Tenant configs, served from the cache when fresh."""

        async def compute() -> list[dict]:
            return [config.model_dump() for config in self._load_configs(tenant_id)]

        raw = await self.cache.get_or_compute(
            CacheKey(tenant_id=tenant_id, scope=SCOPE_GATEWAYS, query="configs"),
            compute,
            self.ttl_seconds,
        )
        return [GatewayConfig.model_validate(item) for item in raw]

    async def list_gateways(self, ctx: AuthContext) -> list[GatewayConfigView]:
        return [config.view() for config in await self.configs(ctx.tenant_id)]

    async def resolve(self, tenant_id: str, gateway_id: str | None = None) -> GatewayAdapter:
        """Return the adapter for `gateway_id`, or the tenant's active default."""

        enabled = [config for config in await self.configs(tenant_id) if config.enabled]
        if gateway_id is not None:
            chosen = next((config for config in enabled if config.gateway_id == gateway_id), None)
        else:
            chosen = next((config for config in enabled if config.is_default), None)
            if chosen is None and enabled:
                chosen = enabled[0]
        if chosen is None:
            raise GatewayNotConfigured(
                f"gateway {gateway_id} is not configured or disabled" if gateway_id else None
            )
        return self.factory.build(chosen)

    @staticmethod
    def ensure_capability(adapter: GatewayAdapter, operation: str) -> None:
        if operation not in adapter.config.capabilities or operation not in adapter.supported_capabilities:
            raise UnsupportedOperation(f"{adapter.gateway_id} is not configured for {operation}")

    async def dispatch(self, adapter: GatewayAdapter, operation: str, *args, **kwargs):
        """Capability-checked call into one adapter operation."""

        self.ensure_capability(adapter, operation)
        with tracer.start_as_current_span(f"gateway.{operation}") as span:
            span.set_attribute("rcm.gateway", adapter.gateway_id)
            try:
                result = await getattr(adapter, operation)(*args, **kwargs)
            except GatewayError as exc:
                gateway_calls_total.labels(gateway=adapter.gateway_id, operation=operation, outcome=exc.kind).inc()
                raise
        gateway_calls_total.labels(gateway=adapter.gateway_id, operation=operation, outcome="ok").inc()
        return result

    async def configure(self, ctx: AuthContext, req: GatewayConfigureRequest) -> GatewayConfigView:
        """Create or replace one gateway configuration for the caller's tenant."""

        adapter_type = self.factory.adapter_type(req.provider_id)
        with self.session_factory() as db:
            record = db.execute(
                select(GatewayConfigRecord).where(
                    GatewayConfigRecord.tenant_id == ctx.tenant_id,
                    GatewayConfigRecord.gateway_id == req.provider_id,
                )
            ).scalar_one_or_none()

            capabilities = req.capabilities
            if capabilities is None:
                capabilities = list(record.capabilities) if record else sorted(adapter_type.supported_capabilities)
            unknown = sorted(set(capabilities) - set(ALL_CAPABILITIES))
            if unknown:
                raise GatewayMisconfigured(f"unknown capabilities: {', '.join(unknown)}")

            credentials_ref = req.credentials_ref or (record.credentials_ref if record else None)
            if credentials_ref is not None:
                validate_credentials_ref(credentials_ref)

            config = GatewayConfig(
                tenant_id=ctx.tenant_id,
                gateway_id=req.provider_id,
                display_name=req.display_name or (record.display_name if record else req.provider_id.title()),
                credentials_ref=credentials_ref,
                capabilities=sorted(set(capabilities)),
                options=req.options,
                enabled=req.enabled,
                is_default=req.is_default,
                is_sandbox=req.is_sandbox,
            )
            adapter_type.validate_config(config)

            if config.is_default:
                others = db.execute(
                    select(GatewayConfigRecord).where(
                        GatewayConfigRecord.tenant_id == ctx.tenant_id,
                        GatewayConfigRecord.gateway_id != req.provider_id,
                        GatewayConfigRecord.is_default.is_(True),
                    )
                ).scalars().all()
                for other in others:
                    other.is_default = False

            if record is None:
                record = GatewayConfigRecord(tenant_id=ctx.tenant_id, gateway_id=req.provider_id)
                db.add(record)
            record.display_name = config.display_name
            record.credentials_ref = config.credentials_ref
            record.capabilities = config.capabilities
            record.options = config.options
            record.enabled = config.enabled
            record.is_default = config.is_default
            record.is_sandbox = config.is_sandbox
            db.commit()

        self.cache.invalidate(ctx.tenant_id, SCOPE_GATEWAYS)
        logger.info(
            "gateway_configured tenant_id=%s gateway_id=%s enabled=%s default=%s",
            ctx.tenant_id,
            config.gateway_id,
            config.enabled,
            config.is_default,
        )
        return self.factory.build(config).fetch_config()
