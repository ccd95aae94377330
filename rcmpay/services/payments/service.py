"""Payment orchestrator.

Drives each payment intent through its lifecycle using the tenant's gateway
adapter, persists every transition (timeline, outbox and analytics records in
the same transaction) and reconciles intents whose gateway outcome is unknown.
Per-intent work is serialized with keyed asyncio locks; the row itself is
guarded by optimistic concurrency on `state_version`.
"""

import asyncio
import hashlib
import json
from datetime import datetime, timezone

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from rcmpay.common.config import settings
from rcmpay.common.db import as_utc, utcnow
from rcmpay.common.errors import (
    ConcurrentModification,
    GatewayDeclined,
    GatewayError,
    IdempotencyConflict,
    IntentNotFound,
    InvalidPayload,
    InvalidTransition,
    RCMError,
    ReconciliationPending,
    TransientGatewayError,
)
from rcmpay.common.events import EventEnvelope
from rcmpay.common.locks import KeyedLocks
from rcmpay.common.logging import intent_id_ctx, logger, trace_id_ctx
from rcmpay.common.metrics import (
    payment_e2e_seconds,
    payment_requests_total,
    payment_terminal_total,
    reconciliations_total,
)
from rcmpay.common.retry import retry_transient
from rcmpay.common.state_machine import (
    CONFIRMED,
    CREATED,
    FAILED,
    REFUNDED,
    REQUIRES_CONFIRMATION,
    SETTLED,
    validate_transition,
)
from rcmpay.services.analytics.models import PAYMENT_REFUNDED, PAYMENT_SETTLED, TransactionRecord
from rcmpay.services.auth.guard import AccessGuard
from rcmpay.services.auth.schemas import AuthContext
from rcmpay.services.cache.service import SCOPE_ANALYTICS, CacheLayer
from rcmpay.services.gateways.adapters import GatewayAdapter
from rcmpay.services.gateways.schemas import CONFIRM, CREATE_INTENT, REFUND, RETRIEVE, GatewayIntent
from rcmpay.services.gateways.service import GatewayRegistry
from rcmpay.services.payments.models import OutboxEvent, PaymentIntent, PaymentTimeline
from rcmpay.services.payments.schemas import (
    ConfirmRequest,
    HistoryFilters,
    PaymentIntentCreateRequest,
    RefundRequest,
)

FORWARD_PATH = (CREATED, REQUIRES_CONFIRMATION, CONFIRMED, SETTLED)

EVENT_TOPICS = {
    REQUIRES_CONFIRMATION: "rcm.payments.created",
    CONFIRMED: "rcm.payments.confirmed",
    SETTLED: "rcm.payments.settled",
    FAILED: "rcm.payments.failed",
    REFUNDED: "rcm.payments.refunded",
}
PENDING_TOPIC = "rcm.payments.pending_verification"


def transition_path(current: str, target: str) -> list[str]:
    """States to walk through to reach `target` as reported by a gateway.

    Forward moves along created -> requires_confirmation -> confirmed -> settled
    expand into each intermediate step; a target behind `current` is a no-op.
    """

    if target == current:
        return []
    if current in FORWARD_PATH and target in FORWARD_PATH:
        start, end = FORWARD_PATH.index(current), FORWARD_PATH.index(target)
        return list(FORWARD_PATH[start + 1 : end + 1])
    return [target]


def _request_hash(req: PaymentIntentCreateRequest) -> str:
    body = json.dumps(
        {"amount": req.amount, "currency": req.currency, "metadata": req.metadata, "gateway_id": req.gateway_id},
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


class PaymentOrchestrator:
    """Owns the payment intent state machine and its gateway side effects."""

    def __init__(
        self,
        session_factory,
        registry: GatewayRegistry,
        cache: CacheLayer,
        service_name: str = "rcm-service",
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        timeout_seconds: float | None = None,
        publish_events: bool | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry
        self.cache = cache
        self.service_name = service_name
        self.max_attempts = max_attempts or settings.gateway_max_attempts
        self.backoff_base_seconds = (
            settings.gateway_backoff_base_seconds if backoff_base_seconds is None else backoff_base_seconds
        )
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds
        self.publish_events = settings.kafka_enabled if publish_events is None else publish_events
        self.locks = KeyedLocks()

    # Public operations -----------------------------------------------------

    async def create_intent(self, ctx: AuthContext, req: PaymentIntentCreateRequest) -> PaymentIntent:
        """Create one intent per (tenant, idempotency key); replays return the first result."""

        request_hash = _request_hash(req)
        async with self.locks.hold(("idempotency", ctx.tenant_id, req.idempotency_key)):
            existing = self._find_by_key(ctx.tenant_id, req.idempotency_key)
            if existing is not None:
                if existing.request_hash != request_hash:
                    raise IdempotencyConflict()
                intent_id_ctx.set(existing.intent_id)
                logger.info("payment_intent_replay intent_id=%s status=%s", existing.intent_id, existing.status)
                async with self.locks.hold(existing.intent_id):
                    return await self._refresh(existing.intent_id)

            adapter = await self.registry.resolve(ctx.tenant_id, req.gateway_id)
            self.registry.ensure_capability(adapter, CREATE_INTENT)
            payment_requests_total.labels(service=self.service_name).inc()
            intent = self._insert(ctx, req, adapter.gateway_id, request_hash)
            intent_id_ctx.set(intent.intent_id)

            async with self.locks.hold(intent.intent_id):
                try:
                    result = await self._call_flagged(
                        intent.intent_id,
                        adapter,
                        CREATE_INTENT,
                        intent.amount,
                        intent.currency,
                        intent.intent_metadata,
                        f"{intent.intent_id}:create",
                    )
                except GatewayDeclined as exc:
                    self._persist(intent.intent_id, lambda db, row: self._fail(db, row, exc))
                    raise
                return self._persist(
                    intent.intent_id,
                    lambda db, row: self._apply_gateway(db, row, result, "gateway_created"),
                )

    async def confirm_payment(self, ctx: AuthContext, intent_id: str, req: ConfirmRequest) -> PaymentIntent:
        """Confirm with the gateway; immediate capture settles in the same step."""

        async with self.locks.hold(intent_id):
            intent = await self._load_current(ctx, intent_id, unresolved_ok=False)
            validate_transition(intent.status, CONFIRMED)
            adapter = await self.registry.resolve(intent.tenant_id, intent.gateway_id)
            try:
                result = await self._call_flagged(
                    intent_id,
                    adapter,
                    CONFIRM,
                    intent.gateway_reference,
                    req.confirmation_data,
                    f"{intent.intent_id}:confirm",
                )
            except GatewayDeclined as exc:
                self._persist(intent_id, lambda db, row: self._fail(db, row, exc))
                raise
            return self._persist(intent_id, lambda db, row: self._apply_gateway(db, row, result, "gateway_confirmed"))

    async def settle_payment(self, ctx: AuthContext, intent_id: str) -> PaymentIntent:
        """Ask the gateway whether a confirmed intent has settled and record it."""

        async with self.locks.hold(intent_id):
            intent = await self._load_current(ctx, intent_id, unresolved_ok=False)
            if intent.status == SETTLED:
                return intent
            validate_transition(intent.status, SETTLED)
            adapter = await self.registry.resolve(intent.tenant_id, intent.gateway_id)
            result = await self._call(adapter, RETRIEVE, intent.gateway_reference)
            if result.status != "settled":
                logger.info("payment_not_yet_settled intent_id=%s gateway_status=%s", intent_id, result.status)
                return intent
            return self._persist(intent_id, lambda db, row: self._apply_gateway(db, row, result, "gateway_settled"))

    async def process_refund(self, ctx: AuthContext, intent_id: str, req: RefundRequest) -> PaymentIntent:
        """Refund a confirmed or settled intent (full amount unless given).

        A gateway decline leaves the intent untouched: refunds start from
        states that have no edge to `failed`.
        """

        async with self.locks.hold(intent_id):
            intent = await self._load_current(ctx, intent_id, unresolved_ok=False)
            validate_transition(intent.status, REFUNDED)
            amount = req.amount if req.amount is not None else intent.amount
            if amount > intent.amount:
                raise InvalidPayload("refund amount exceeds the payment amount")
            adapter = await self.registry.resolve(intent.tenant_id, intent.gateway_id)
            try:
                result = await self._call_flagged(
                    intent_id, adapter, REFUND, intent.gateway_reference, amount, f"{intent.intent_id}:refund"
                )
            except GatewayDeclined as exc:
                logger.warning("refund_declined intent_id=%s decline_code=%s", intent_id, exc.decline_code)
                raise

            def apply_refund(db, row: PaymentIntent) -> None:
                row.refunded_amount = amount
                self._apply_gateway(db, row, result.model_copy(update={"refunded_amount": amount}), "gateway_refunded")

            intent = self._persist(intent_id, apply_refund)
            logger.info("payment_refunded intent_id=%s amount=%s reason=%s", intent_id, amount, req.reason or "-")
            return intent

    async def get_intent(self, ctx: AuthContext, intent_id: str) -> PaymentIntent:
        async with self.locks.hold(intent_id):
            return await self._load_current(ctx, intent_id)

    def payment_history(self, ctx: AuthContext, filters: HistoryFilters) -> tuple[list[PaymentIntent], int]:
        """Tenant intents, newest first, plus the unpaginated total."""

        limit = min(filters.limit, settings.history_max_page_size)
        conditions = [PaymentIntent.tenant_id == ctx.tenant_id]
        if filters.status:
            conditions.append(PaymentIntent.status == filters.status)
        if filters.gateway_id:
            conditions.append(PaymentIntent.gateway_id == filters.gateway_id)
        if filters.date_from:
            conditions.append(PaymentIntent.created_at >= filters.date_from)
        if filters.date_to:
            conditions.append(PaymentIntent.created_at <= filters.date_to)

        with self.session_factory() as db:
            total = db.execute(select(func.count()).select_from(PaymentIntent).where(*conditions)).scalar_one()
            intents = (
                db.execute(
                    select(PaymentIntent)
                    .where(*conditions)
                    .order_by(PaymentIntent.created_at.desc(), PaymentIntent.intent_id)
                    .offset((filters.page - 1) * limit)
                    .limit(limit)
                )
                .scalars()
                .all()
            )
        return list(intents), total

    # Reconciliation --------------------------------------------------------

    async def reconcile_pending(self, limit: int = 100) -> int:
        """Re-query the gateway for intents whose outcome is unknown; return how many resolved."""

        with self.session_factory() as db:
            intent_ids = (
                db.execute(
                    select(PaymentIntent.intent_id)
                    .where(or_(PaymentIntent.pending_verification.is_(True), PaymentIntent.status == CREATED))
                    .order_by(PaymentIntent.updated_at)
                    .limit(limit)
                )
                .scalars()
                .all()
            )
        resolved = 0
        for intent_id in intent_ids:
            try:
                async with self.locks.hold(intent_id):
                    intent = await self._refresh(intent_id)
            except RCMError as exc:
                logger.warning("reconcile_failed intent_id=%s kind=%s", intent_id, exc.kind)
                continue
            if not self._needs_reconcile(intent):
                resolved += 1
        return resolved

    async def reconcile_forever(self, interval_seconds: float) -> None:
        """Background loop that drains pending-verification intents."""

        while True:
            try:
                resolved = await self.reconcile_pending()
                if resolved:
                    logger.info("reconcile_pass resolved=%s", resolved)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("reconcile_loop_error error=%s", exc)
            await asyncio.sleep(interval_seconds)

    @staticmethod
    def _needs_reconcile(intent: PaymentIntent) -> bool:
        # A row left in `created` means the gateway outcome of creation was never recorded.
        return bool(intent.pending_verification) or intent.status == CREATED

    async def _load_current(self, ctx: AuthContext, intent_id: str, unresolved_ok: bool = True) -> PaymentIntent:
        intent = self._get_row(intent_id)
        AccessGuard.ensure_tenant(ctx, intent.tenant_id)
        intent_id_ctx.set(intent_id)
        intent = await self._refresh(intent_id, intent)
        if not unresolved_ok and intent.status == CREATED:
            # The gateway has not yet told us whether creation happened.
            raise ReconciliationPending()
        return intent

    async def _refresh(self, intent_id: str, intent: PaymentIntent | None = None) -> PaymentIntent:
        """Return the intent, reconciling it with the gateway first when needed.

        Callers hold the intent lock.
        """

        intent = intent or self._get_row(intent_id)
        if not self._needs_reconcile(intent):
            return intent

        try:
            adapter = await self.registry.resolve(intent.tenant_id, intent.gateway_id)
            if intent.gateway_reference is None:
                # Creation outcome unknown: replaying the same key returns what the gateway recorded.
                result = await self._call(
                    adapter,
                    CREATE_INTENT,
                    intent.amount,
                    intent.currency,
                    intent.intent_metadata,
                    f"{intent.intent_id}:create",
                )
            else:
                result = await self._call(adapter, RETRIEVE, intent.gateway_reference)
        except GatewayDeclined as exc:
            if intent.gateway_reference is None:
                reconciliations_total.labels(service=self.service_name, outcome="failed").inc()
                return self._persist(intent_id, lambda db, row: self._fail(db, row, exc))
            reconciliations_total.labels(service=self.service_name, outcome="deferred").inc()
            logger.warning("reconcile_lookup_rejected intent_id=%s decline_code=%s", intent_id, exc.decline_code)
            return intent
        except GatewayError as exc:
            reconciliations_total.labels(service=self.service_name, outcome="deferred").inc()
            logger.warning("reconcile_deferred intent_id=%s kind=%s", intent_id, exc.kind)
            return intent

        def sync(db, row: PaymentIntent) -> None:
            try:
                self._apply_gateway(db, row, result, "reconciled")
            except InvalidTransition:
                logger.error(
                    "reconcile_divergence intent_id=%s local=%s gateway=%s",
                    row.intent_id,
                    row.status,
                    result.status,
                )
                row.pending_verification = False
                row.pending_operation = None

        intent = self._persist(intent_id, sync)
        reconciliations_total.labels(service=self.service_name, outcome="resolved").inc()
        logger.info("payment_reconciled intent_id=%s status=%s", intent_id, intent.status)
        return intent

    # Gateway + persistence helpers -----------------------------------------

    async def _call(self, adapter: GatewayAdapter, operation: str, *args) -> GatewayIntent:
        return await retry_transient(
            lambda: self.registry.dispatch(adapter, operation, *args),
            max_attempts=self.max_attempts,
            backoff_base_seconds=self.backoff_base_seconds,
            timeout_seconds=self.timeout_seconds,
            service_name=self.service_name,
        )

    async def _call_flagged(self, intent_id: str, adapter: GatewayAdapter, operation: str, *args) -> GatewayIntent:
        """Gateway call whose unknown outcome flags the intent for reconciliation.

        A cancelled caller leaves the outcome as unknown as a timeout does.
        """

        try:
            return await self._call(adapter, operation, *args)
        except (TransientGatewayError, asyncio.CancelledError):
            self._mark_pending(intent_id, operation)
            raise

    def _find_by_key(self, tenant_id: str, idempotency_key: str) -> PaymentIntent | None:
        with self.session_factory() as db:
            return db.execute(
                select(PaymentIntent).where(
                    PaymentIntent.tenant_id == tenant_id,
                    PaymentIntent.idempotency_key == idempotency_key,
                )
            ).scalar_one_or_none()

    def _get_row(self, intent_id: str) -> PaymentIntent:
        with self.session_factory() as db:
            intent = db.get(PaymentIntent, intent_id)
        if intent is None:
            raise IntentNotFound()
        return intent

    def _insert(
        self, ctx: AuthContext, req: PaymentIntentCreateRequest, gateway_id: str, request_hash: str
    ) -> PaymentIntent:
        """Persist the intent before any gateway side effect."""

        with self.session_factory() as db:
            intent = PaymentIntent(
                tenant_id=ctx.tenant_id,
                provider_id=ctx.provider_id,
                amount=req.amount,
                currency=req.currency,
                gateway_id=gateway_id,
                status=CREATED,
                state_version=0,
                idempotency_key=req.idempotency_key,
                request_hash=request_hash,
                intent_metadata=req.metadata,
                refunded_amount=0,
                pending_verification=False,
            )
            db.add(intent)
            db.flush()
            db.add(
                PaymentTimeline(
                    intent_id=intent.intent_id,
                    from_state=None,
                    to_state=CREATED,
                    reason="intent_created",
                )
            )
            db.commit()
        logger.info(
            "payment_intent_created intent_id=%s gateway=%s amount=%s currency=%s",
            intent.intent_id,
            gateway_id,
            intent.amount,
            intent.currency,
        )
        return intent

    def _persist(self, intent_id: str, mutate) -> PaymentIntent:
        """Apply `mutate(db, row)` to a fresh row in one transaction.

        A store failure after a gateway side effect leaves the outcome to
        reconciliation on next access.
        """

        with self.session_factory() as db:
            try:
                intent = db.get(PaymentIntent, intent_id)
                if intent is None:
                    raise IntentNotFound()
                before = intent.status
                mutate(db, intent)
                intent.updated_at = utcnow()
                db.commit()
            except RCMError:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("payment_persist_failed intent_id=%s error=%s", intent_id, exc)
                raise ReconciliationPending() from exc
        if intent.status != before and intent.status in (SETTLED, REFUNDED):
            self.cache.invalidate(intent.tenant_id, SCOPE_ANALYTICS)
        return intent

    def _mark_pending(self, intent_id: str, operation: str) -> None:
        """Flag an intent whose gateway outcome is unknown after a timeout."""

        def flag(db, row: PaymentIntent) -> None:
            row.pending_verification = True
            row.pending_operation = operation
            self._emit(db, row, PENDING_TOPIC)

        try:
            self._persist(intent_id, flag)
        except RCMError as exc:
            logger.error("pending_flag_failed intent_id=%s kind=%s", intent_id, exc.kind)
            return
        logger.warning("payment_pending_verification intent_id=%s operation=%s", intent_id, operation)

    def _fail(self, db, intent: PaymentIntent, exc: GatewayDeclined) -> None:
        intent.failure_code = exc.decline_code or exc.kind
        intent.pending_verification = False
        intent.pending_operation = None
        self._transition(db, intent, FAILED, reason="gateway_declined")

    def _apply_gateway(self, db, intent: PaymentIntent, result: GatewayIntent, reason: str) -> None:
        """Bring the local intent in line with the gateway's view of it."""

        intent.gateway_reference = result.reference
        intent.pending_verification = False
        intent.pending_operation = None
        if result.refunded_amount:
            intent.refunded_amount = result.refunded_amount
        if result.status == FAILED:
            intent.failure_code = result.decline_code or intent.failure_code
        for status in transition_path(intent.status, result.status):
            self._transition(db, intent, status, reason=reason)

    def _transition(self, db, intent: PaymentIntent, new_status: str, reason: str) -> None:
        """Apply one validated state transition with optimistic concurrency.

        The write is guarded by `(intent_id, status, state_version)` so a stale
        concurrent update cannot succeed.
        """

        validate_transition(intent.status, new_status)
        from_status = intent.status
        current_version = intent.state_version

        result = db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.intent_id == intent.intent_id,
                PaymentIntent.status == from_status,
                PaymentIntent.state_version == current_version,
            )
            .values(status=new_status, state_version=current_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentModification(
                f"payment intent {intent.intent_id} changed underneath (expected version {current_version})"
            )

        intent.status = new_status
        intent.state_version = current_version + 1
        db.add(
            PaymentTimeline(
                intent_id=intent.intent_id,
                from_state=from_status,
                to_state=new_status,
                reason=reason,
            )
        )
        self._record_transaction(db, intent, from_status, new_status)
        self._emit(db, intent, EVENT_TOPICS[new_status])
        logger.info(
            "payment_transition intent_id=%s from=%s to=%s reason=%s",
            intent.intent_id,
            from_status,
            new_status,
            reason,
        )
        if new_status in (SETTLED, FAILED, REFUNDED):
            payment_terminal_total.labels(service=self.service_name, state=new_status).inc()
            self._observe_terminal_e2e(intent, new_status)

    def _record_transaction(self, db, intent: PaymentIntent, from_status: str, new_status: str) -> None:
        """Append the analytics projection for money that actually moved."""

        if new_status == SETTLED:
            kind, amount = PAYMENT_SETTLED, intent.amount
        elif new_status == REFUNDED and from_status == SETTLED:
            kind, amount = PAYMENT_REFUNDED, intent.refunded_amount or intent.amount
        else:
            return
        db.add(
            TransactionRecord(
                tenant_id=intent.tenant_id,
                kind=kind,
                amount=amount,
                currency=intent.currency,
                occurred_at=utcnow(),
                source_key=f"{kind}:{intent.intent_id}",
                intent_id=intent.intent_id,
            )
        )

    def _emit(self, db, intent: PaymentIntent, topic: str) -> None:
        if not self.publish_events:
            return
        db.add(
            OutboxEvent(
                aggregate_type="payment_intent",
                aggregate_id=intent.intent_id,
                event_type=topic,
                topic=topic,
                payload=EventEnvelope(
                    event_type=topic,
                    aggregate_id=intent.intent_id,
                    tenant_id=intent.tenant_id,
                    trace_id=trace_id_ctx.get(),
                    payload={
                        "status": intent.status,
                        "amount": intent.amount,
                        "currency": intent.currency,
                        "gateway_id": intent.gateway_id,
                        "refunded_amount": intent.refunded_amount or 0,
                        "pending_operation": intent.pending_operation,
                    },
                ).model_dump(),
            )
        )

    def _observe_terminal_e2e(self, intent: PaymentIntent, terminal_state: str) -> None:
        created_at = as_utc(intent.created_at)
        if created_at is None:
            return
        elapsed = max(0.0, (datetime.now(timezone.utc) - created_at).total_seconds())
        payment_e2e_seconds.labels(service=self.service_name, terminal_state=terminal_state).observe(elapsed)
