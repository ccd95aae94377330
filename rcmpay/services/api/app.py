"""HTTP surface of the Unified RCM service.

Every route resolves an `AuthContext` for one required scope before calling
into the components. Responses use one envelope:
`{"success": true, "data": ..., "meta": {...}}` or
`{"success": false, "error": {"kind", "message"}}`.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

import pydantic
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from rcmpay.common.config import settings
from rcmpay.common.errors import InvalidPayload, RCMError
from rcmpay.common.logging import logger, trace_id_ctx
from rcmpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from rcmpay.services.analytics.schemas import ClaimEventRequest
from rcmpay.services.api.container import Container
from rcmpay.services.auth.schemas import (
    SCOPE_CACHE_ADMIN,
    SCOPE_CLAIMS_WRITE,
    SCOPE_DASHBOARD_READ,
    SCOPE_GATEWAYS_READ,
    SCOPE_GATEWAYS_WRITE,
    SCOPE_PAYMENTS_READ,
    SCOPE_PAYMENTS_REFUND,
    SCOPE_PAYMENTS_WRITE,
    AuthContext,
)
from rcmpay.services.cache.service import SCOPES
from rcmpay.services.gateways.schemas import GatewayConfigureRequest
from rcmpay.services.payments.schemas import (
    ConfirmRequest,
    HistoryFilters,
    PaymentIntentCreateRequest,
    PaymentIntentResponse,
    RefundRequest,
)

API_PREFIX = "/api/rcm"


class CacheInvalidateRequest(BaseModel):
    scope: str | None = None


def ok(data, meta: dict | None = None) -> dict:
    body = {"success": True, "data": data}
    if meta is not None:
        body["meta"] = meta
    return body


def failure(status_code: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"kind": kind, "message": message}},
    )


def require(scope: str):
    """Dependency resolving the caller for one required scope."""

    async def dependency(request: Request, authorization: str | None = Header(default=None)) -> AuthContext:
        return request.app.state.container.guard.authorize(authorization, scope)

    return dependency


def _validation_message(errors) -> str:
    fields = sorted({".".join(str(part) for part in error.get("loc", ()) if part != "body") for error in errors})
    fields = [name for name in fields if name]
    return f"invalid fields: {', '.join(fields)}" if fields else InvalidPayload.default_message


def create_app(container: Container, start_workers: bool = True) -> FastAPI:
    """Build the FastAPI app around an already-wired container."""

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run cache sweep, reconciliation and (optional) outbox publishing with the app."""

        tasks = []
        if start_workers:
            tasks.append(asyncio.create_task(container.cache.sweep_forever(settings.cache_sweep_interval_seconds)))
            tasks.append(
                asyncio.create_task(container.orchestrator.reconcile_forever(settings.reconcile_interval_seconds))
            )
            if container.relay is not None:
                tasks.append(asyncio.create_task(container.relay.run_forever()))
        yield
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if container.relay is not None:
            await container.relay.bus.close()

    app = FastAPI(title="Unified RCM Service", lifespan=lifespan)
    app.state.container = container

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency; propagate the trace id."""

        trace_id = request.headers.get("x-trace-id") or str(uuid4())
        trace_id_ctx.set(trace_id)
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            response.headers["x-trace-id"] = trace_id
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=container.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=container.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(RCMError)
    async def rcm_error_handler(_: Request, exc: RCMError):
        if exc.status_code >= 500 or exc.family == "ConsistencyError":
            logger.warning("request_failed kind=%s status=%s", exc.kind, exc.status_code)
        else:
            logger.info("request_rejected kind=%s status=%s", exc.kind, exc.status_code)
        return failure(exc.status_code, exc.kind, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError):
        return failure(InvalidPayload.status_code, InvalidPayload.kind, _validation_message(exc.errors()))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(_: Request, exc: StarletteHTTPException):
        kind = "NotFound" if exc.status_code == 404 else "HTTPError"
        return failure(exc.status_code, kind, "route not found" if exc.status_code == 404 else "request failed")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_: Request, exc: Exception):
        logger.exception("unhandled_error error=%s", exc)
        return failure(500, "InternalError", "internal error")

    # Analytics ------------------------------------------------------------

    @app.get(f"{API_PREFIX}/dashboard")
    async def dashboard(
        timeframe: str = "30d",
        granularity: str = "day",
        currency: str | None = None,
        ctx: AuthContext = Depends(require(SCOPE_DASHBOARD_READ)),
    ):
        """Dashboard metrics for the caller's tenant over one timeframe."""

        snapshot, cached = await container.aggregator.get_dashboard(ctx, timeframe, granularity, currency)
        return ok(snapshot, meta={"cached": cached, "timeframe": timeframe})

    @app.get(f"{API_PREFIX}/denials/analytics")
    async def denial_analytics(
        timeframe: str = "30d",
        currency: str | None = None,
        ctx: AuthContext = Depends(require(SCOPE_DASHBOARD_READ)),
    ):
        report, cached = await container.aggregator.denial_analytics(ctx, timeframe, currency)
        return ok(report, meta={"cached": cached, "timeframe": timeframe})

    @app.post(f"{API_PREFIX}/claims/events")
    async def record_claim_event(
        req: ClaimEventRequest,
        ctx: AuthContext = Depends(require(SCOPE_CLAIMS_WRITE)),
    ):
        return ok(container.aggregator.record_claim_event(ctx, req))

    # Gateways -------------------------------------------------------------

    @app.get(f"{API_PREFIX}/gateways")
    async def list_gateways(ctx: AuthContext = Depends(require(SCOPE_GATEWAYS_READ))):
        """Configured gateways: capabilities and flags only, never credentials."""

        return ok(await container.registry.list_gateways(ctx))

    @app.post(f"{API_PREFIX}/gateways/configure")
    async def configure_gateway(
        req: GatewayConfigureRequest,
        ctx: AuthContext = Depends(require(SCOPE_GATEWAYS_WRITE)),
    ):
        return ok(await container.registry.configure(ctx, req))

    # Payment intents ------------------------------------------------------

    @app.post(f"{API_PREFIX}/paymentIntents")
    async def create_payment_intent(
        req: PaymentIntentCreateRequest,
        ctx: AuthContext = Depends(require(SCOPE_PAYMENTS_WRITE)),
    ):
        """Create (or replay by idempotency key) one payment intent."""

        intent = await container.orchestrator.create_intent(ctx, req)
        return ok(PaymentIntentResponse.from_intent(intent))

    @app.get(f"{API_PREFIX}/paymentIntents/{{intent_id}}")
    async def get_payment_intent(intent_id: str, ctx: AuthContext = Depends(require(SCOPE_PAYMENTS_READ))):
        intent = await container.orchestrator.get_intent(ctx, intent_id)
        return ok(PaymentIntentResponse.from_intent(intent))

    @app.post(f"{API_PREFIX}/paymentIntents/{{intent_id}}/confirm")
    async def confirm_payment_intent(
        intent_id: str,
        req: ConfirmRequest | None = None,
        ctx: AuthContext = Depends(require(SCOPE_PAYMENTS_WRITE)),
    ):
        intent = await container.orchestrator.confirm_payment(ctx, intent_id, req or ConfirmRequest())
        return ok(PaymentIntentResponse.from_intent(intent))

    @app.post(f"{API_PREFIX}/paymentIntents/{{intent_id}}/settle")
    async def settle_payment_intent(intent_id: str, ctx: AuthContext = Depends(require(SCOPE_PAYMENTS_WRITE))):
        intent = await container.orchestrator.settle_payment(ctx, intent_id)
        return ok(PaymentIntentResponse.from_intent(intent))

    @app.post(f"{API_PREFIX}/paymentIntents/{{intent_id}}/refund")
    async def refund_payment_intent(
        intent_id: str,
        req: RefundRequest | None = None,
        ctx: AuthContext = Depends(require(SCOPE_PAYMENTS_REFUND)),
    ):
        intent = await container.orchestrator.process_refund(ctx, intent_id, req or RefundRequest())
        return ok(PaymentIntentResponse.from_intent(intent))

    @app.get(f"{API_PREFIX}/paymentHistory")
    async def payment_history(
        status: str | None = None,
        gateway_id: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        page: int = 1,
        limit: int = 20,
        ctx: AuthContext = Depends(require(SCOPE_PAYMENTS_READ)),
    ):
        """Tenant payment intents, newest first; `meta` carries pagination."""

        try:
            filters = HistoryFilters(
                status=status,
                gateway_id=gateway_id,
                date_from=date_from,
                date_to=date_to,
                page=page,
                limit=limit,
            )
        except pydantic.ValidationError as exc:
            raise InvalidPayload(_validation_message(exc.errors())) from exc
        intents, total = container.orchestrator.payment_history(ctx, filters)
        effective_limit = min(filters.limit, settings.history_max_page_size)
        return ok(
            [PaymentIntentResponse.from_intent(intent) for intent in intents],
            meta={
                "page": filters.page,
                "limit": effective_limit,
                "total": total,
                "pages": (total + effective_limit - 1) // effective_limit,
            },
        )

    # Cache administration -------------------------------------------------

    @app.get(f"{API_PREFIX}/cache/stats")
    async def cache_stats(_: AuthContext = Depends(require(SCOPE_CACHE_ADMIN))):
        return ok(container.cache.stats())

    @app.post(f"{API_PREFIX}/cache/invalidate")
    async def cache_invalidate(
        req: CacheInvalidateRequest | None = None,
        ctx: AuthContext = Depends(require(SCOPE_CACHE_ADMIN)),
    ):
        """Bump the caller's invalidation epoch for one scope (or all)."""

        scope = req.scope if req else None
        if scope is not None and scope not in SCOPES:
            raise InvalidPayload(f"scope must be one of {', '.join(SCOPES)}")
        container.cache.invalidate(ctx.tenant_id, scope)
        return ok({"tenant_id": ctx.tenant_id, "scopes": [scope] if scope else list(SCOPES)})

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app
