"""Payment gateway adapters.

Every provider is wrapped behind the same capability set (create_intent,
confirm, refund, retrieve, fetch_config). The base class makes each side
effect idempotent on the caller's key: a replay with the same key and the same
request returns the recorded result without calling the provider again.
"""

import asyncio
import hashlib
import json
import os
from abc import ABC, abstractmethod
from typing import Any
from uuid import uuid4

import httpx
from pydantic import SecretStr
from sqlalchemy.exc import IntegrityError

from rcmpay.common.config import settings
from rcmpay.common.errors import (
    GatewayDeclined,
    GatewayMisconfigured,
    GatewayTimeout,
    GatewayUnavailable,
    IdempotencyConflict,
)
from rcmpay.common.logging import logger
from rcmpay.common.metrics import gateway_idempotent_replays_total
from rcmpay.services.gateways.models import GatewayRequestRecord
from rcmpay.services.gateways.schemas import (
    ALL_CAPABILITIES,
    CONFIRM,
    CREATE_INTENT,
    REFUND,
    RETRIEVE,
    GatewayConfig,
    GatewayConfigView,
    GatewayIntent,
)


def validate_credentials_ref(credentials_ref: str) -> str:
    """Check the reference shape without touching the secret itself."""

    scheme, _, name = credentials_ref.partition(":")
    if scheme != "env" or not name:
        raise GatewayMisconfigured("unsupported credentials reference")
    return name


def resolve_credentials(credentials_ref: str | None) -> SecretStr:
    """Turn an opaque `env:NAME` reference into the secret it points at."""

    if not credentials_ref:
        raise GatewayMisconfigured("gateway credentials are not configured")
    value = os.getenv(validate_credentials_ref(credentials_ref))
    if not value:
        raise GatewayMisconfigured("gateway credentials are not available")
    return SecretStr(value)


def _request_hash(operation: str, request: dict[str, Any]) -> str:
    body = json.dumps({"operation": operation, **request}, sort_keys=True, default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


class GatewayRequestStore:
    """Durable record of idempotent gateway side effects."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def lookup(self, tenant_id: str, gateway_id: str, idempotency_key: str) -> GatewayRequestRecord | None:
        with self.session_factory() as db:
            return db.get(GatewayRequestRecord, (tenant_id, gateway_id, idempotency_key))

    def record(
        self,
        tenant_id: str,
        gateway_id: str,
        idempotency_key: str,
        operation: str,
        request_hash: str,
        response: dict,
    ) -> None:
        with self.session_factory() as db:
            db.add(
                GatewayRequestRecord(
                    tenant_id=tenant_id,
                    gateway_id=gateway_id,
                    idempotency_key=idempotency_key,
                    operation=operation,
                    request_hash=request_hash,
                    response=response,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # A concurrent caller recorded the same key first.
                db.rollback()


class GatewayAdapter(ABC):
    """Provider-neutral capability interface."""

    gateway_id: str = ""
    supported_capabilities: frozenset[str] = frozenset(ALL_CAPABILITIES)
    allowed_options: frozenset[str] = frozenset()

    def __init__(self, config: GatewayConfig, request_store: GatewayRequestStore) -> None:
        self.config = config
        self.request_store = request_store

    @classmethod
    def validate_config(cls, config: GatewayConfig) -> None:
        """Reject provider-specific configuration this adapter cannot honor."""

        unsupported = sorted(set(config.capabilities) - cls.supported_capabilities)
        if unsupported:
            raise GatewayMisconfigured(f"{cls.gateway_id} does not support: {', '.join(unsupported)}")
        unknown = sorted(set(config.options) - cls.allowed_options)
        if unknown:
            raise GatewayMisconfigured(f"unknown {cls.gateway_id} options: {', '.join(unknown)}")

    async def create_intent(
        self, amount: int, currency: str, metadata: dict[str, Any], idempotency_key: str
    ) -> GatewayIntent:
        request = {"amount": amount, "currency": currency, "metadata": metadata}
        return await self._once(
            CREATE_INTENT,
            idempotency_key,
            request,
            lambda: self._create_intent(amount, currency, metadata, idempotency_key),
        )

    async def confirm(
        self, reference: str, confirmation_data: dict[str, Any], idempotency_key: str
    ) -> GatewayIntent:
        request = {"reference": reference, "confirmation_data": confirmation_data}
        return await self._once(
            CONFIRM,
            idempotency_key,
            request,
            lambda: self._confirm(reference, confirmation_data, idempotency_key),
        )

    async def refund(self, reference: str, amount: int, idempotency_key: str) -> GatewayIntent:
        request = {"reference": reference, "amount": amount}
        return await self._once(
            REFUND,
            idempotency_key,
            request,
            lambda: self._refund(reference, amount, idempotency_key),
        )

    async def retrieve(self, reference: str) -> GatewayIntent:
        return await self._retrieve(reference)

    def fetch_config(self) -> GatewayConfigView:
        return self.config.view()

    async def _once(self, operation: str, idempotency_key: str, request: dict[str, Any], call) -> GatewayIntent:
        request_hash = _request_hash(operation, request)
        recorded = self.request_store.lookup(self.config.tenant_id, self.gateway_id, idempotency_key)
        if recorded is not None:
            if recorded.request_hash != request_hash:
                raise IdempotencyConflict()
            gateway_idempotent_replays_total.labels(gateway=self.gateway_id, operation=operation).inc()
            logger.info(
                "gateway_replay gateway=%s operation=%s idempotency_key=%s",
                self.gateway_id,
                operation,
                idempotency_key,
            )
            return GatewayIntent.model_validate(recorded.response)

        result = await call()
        try:
            self.request_store.record(
                self.config.tenant_id,
                self.gateway_id,
                idempotency_key,
                operation,
                request_hash,
                result.model_dump(),
            )
        except Exception as exc:
            # The provider's own idempotency key still guards a retried call.
            logger.warning("gateway_request_record_failed operation=%s error=%s", operation, exc)
        return result

    @abstractmethod
    async def _create_intent(
        self, amount: int, currency: str, metadata: dict[str, Any], idempotency_key: str
    ) -> GatewayIntent: ...

    @abstractmethod
    async def _confirm(
        self, reference: str, confirmation_data: dict[str, Any], idempotency_key: str
    ) -> GatewayIntent: ...

    @abstractmethod
    async def _refund(self, reference: str, amount: int, idempotency_key: str) -> GatewayIntent: ...

    @abstractmethod
    async def _retrieve(self, reference: str) -> GatewayIntent: ...


class SandboxLedger:
    """In-process stand-in for a provider's books, shared by sandbox adapters."""

    def __init__(self) -> None:
        self.intents: dict[str, GatewayIntent] = {}
        self.calls: list[tuple[str, str]] = []
        self.responses: dict[tuple[str, str], GatewayIntent] = {}
        self._failures: dict[tuple[str, str], int] = {}

    def call_count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)

    def next_failure(self, key: str, operation: str) -> int:
        slot = (key, operation)
        self._failures[slot] = self._failures.get(slot, 0) + 1
        return self._failures[slot]


class SandboxGateway(GatewayAdapter):
    """Deterministic simulator used for development and tests.

    Intent metadata (at creation) or confirmation data may carry `simulate`:
    `decline`, `timeout`, `unavailable` (optionally bounded by `fail_times`)
    or `hang` (confirm only: applies the effect, then stalls for
    `hang_seconds`). Like a real provider, a repeated idempotency key returns
    the provider's earlier answer.
    """

    gateway_id = "sandbox"
    allowed_options = frozenset({"auto_settle", "decline_all", "settle_on_retrieve"})

    def __init__(self, config: GatewayConfig, request_store: GatewayRequestStore, ledger: SandboxLedger) -> None:
        super().__init__(config, request_store)
        self.ledger = ledger

    @classmethod
    def validate_config(cls, config: GatewayConfig) -> None:
        super().validate_config(config)
        for name, value in config.options.items():
            if not isinstance(value, bool):
                raise GatewayMisconfigured(f"sandbox option {name} must be a boolean")

    def _option(self, name: str, default: bool) -> bool:
        return bool(self.config.options.get(name, default))

    def _get(self, reference: str) -> GatewayIntent:
        intent = self.ledger.intents.get(reference)
        if intent is None:
            raise GatewayDeclined(decline_code="resource_missing")
        return intent

    def _simulate(self, key: str, operation: str, instructions: dict[str, Any], intent: GatewayIntent | None) -> None:
        mode = instructions.get("simulate")
        if mode in ("timeout", "unavailable"):
            fail_times = int(instructions.get("fail_times", 1_000_000))
            if self.ledger.next_failure(key, operation) <= fail_times:
                raise GatewayTimeout() if mode == "timeout" else GatewayUnavailable()
        if mode == "decline" or self._option("decline_all", False):
            decline_code = "card_declined" if mode == "decline" else "gateway_rejected"
            if intent is not None:
                intent.status = "failed"
                intent.decline_code = decline_code
            raise GatewayDeclined(decline_code=decline_code)

    def _remember(self, operation: str, idempotency_key: str, intent: GatewayIntent) -> GatewayIntent:
        self.ledger.responses[(operation, idempotency_key)] = intent.model_copy()
        return intent.model_copy()

    async def _create_intent(self, amount, currency, metadata, idempotency_key) -> GatewayIntent:
        self.ledger.calls.append((CREATE_INTENT, idempotency_key))
        earlier = self.ledger.responses.get((CREATE_INTENT, idempotency_key))
        if earlier is not None:
            return earlier.model_copy()
        self._simulate(idempotency_key, CREATE_INTENT, metadata, None)
        intent = GatewayIntent(
            reference=f"sbx_pi_{uuid4().hex[:24]}",
            status="requires_confirmation",
            amount=amount,
            currency=currency,
        )
        self.ledger.intents[intent.reference] = intent
        return self._remember(CREATE_INTENT, idempotency_key, intent)

    async def _confirm(self, reference, confirmation_data, idempotency_key) -> GatewayIntent:
        self.ledger.calls.append((CONFIRM, reference))
        earlier = self.ledger.responses.get((CONFIRM, idempotency_key))
        if earlier is not None:
            return earlier.model_copy()
        intent = self._get(reference)
        if intent.status != "requires_confirmation":
            raise GatewayDeclined(decline_code="intent_not_confirmable")
        self._simulate(reference, CONFIRM, confirmation_data, intent)
        intent.status = "settled" if self._option("auto_settle", True) else "confirmed"
        result = self._remember(CONFIRM, idempotency_key, intent)
        if confirmation_data.get("simulate") == "hang":
            await asyncio.sleep(float(confirmation_data.get("hang_seconds", 30)))
        return result

    async def _refund(self, reference, amount, idempotency_key) -> GatewayIntent:
        self.ledger.calls.append((REFUND, reference))
        earlier = self.ledger.responses.get((REFUND, idempotency_key))
        if earlier is not None:
            return earlier.model_copy()
        intent = self._get(reference)
        if intent.status not in ("confirmed", "settled"):
            raise GatewayDeclined(decline_code="charge_not_refundable")
        if amount > intent.amount - intent.refunded_amount:
            raise GatewayDeclined(decline_code="amount_too_large")
        intent.refunded_amount += amount
        intent.status = "refunded"
        return self._remember(REFUND, idempotency_key, intent)

    async def _retrieve(self, reference) -> GatewayIntent:
        self.ledger.calls.append((RETRIEVE, reference))
        intent = self._get(reference)
        if intent.status == "confirmed" and self._option("settle_on_retrieve", True):
            # Simulates the provider's settlement batch running between calls.
            intent.status = "settled"
        return intent.model_copy()


class StripeGateway(GatewayAdapter):
    """Stripe PaymentIntents API over HTTPS."""

    gateway_id = "stripe"
    allowed_options = frozenset({"statement_descriptor", "capture_method"})
    STATUS_MAP = {
        "requires_payment_method": "requires_confirmation",
        "requires_confirmation": "requires_confirmation",
        "requires_action": "requires_confirmation",
        "processing": "confirmed",
        "requires_capture": "confirmed",
        "succeeded": "settled",
        "canceled": "failed",
    }
    CONFIRM_FIELDS = ("payment_method", "return_url", "receipt_email")

    def __init__(
        self,
        config: GatewayConfig,
        request_store: GatewayRequestStore,
        api_base: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(config, request_store)
        self.api_base = api_base or settings.stripe_api_base
        self.transport = transport
        self.timeout_seconds = timeout_seconds or settings.gateway_timeout_seconds

    @classmethod
    def validate_config(cls, config: GatewayConfig) -> None:
        super().validate_config(config)
        if not config.credentials_ref:
            raise GatewayMisconfigured("stripe requires a credentials reference")

    async def _request(
        self,
        method: str,
        path: str,
        data: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> dict:
        secret = resolve_credentials(self.config.credentials_ref)
        headers = {"Authorization": f"Bearer {secret.get_secret_value()}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            async with httpx.AsyncClient(
                base_url=self.api_base,
                timeout=self.timeout_seconds,
                transport=self.transport,
            ) as client:
                resp = await client.request(method, path, data=data, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise GatewayTimeout() from exc
        except httpx.TransportError as exc:
            raise GatewayUnavailable() from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise GatewayUnavailable(f"payment gateway returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise GatewayUnavailable("payment gateway returned an unreadable response") from exc
        if resp.status_code in (401, 403):
            raise GatewayMisconfigured("payment gateway rejected the configured credentials")
        if resp.status_code >= 400:
            error = body.get("error") or {}
            raise GatewayDeclined(decline_code=error.get("decline_code") or error.get("code") or "request_rejected")
        return body

    def _to_intent(self, body: dict) -> GatewayIntent:
        status = self.STATUS_MAP.get(body.get("status", ""), "requires_confirmation")
        refunded_amount = 0
        charge = body.get("latest_charge")
        if isinstance(charge, dict) and charge.get("amount_refunded"):
            status = "refunded"
            refunded_amount = int(charge["amount_refunded"])
        error = body.get("last_payment_error") or {}
        return GatewayIntent(
            reference=body["id"],
            status=status,
            amount=int(body.get("amount", 0)),
            currency=str(body.get("currency", "")).upper(),
            refunded_amount=refunded_amount,
            decline_code=error.get("decline_code"),
        )

    async def _create_intent(self, amount, currency, metadata, idempotency_key) -> GatewayIntent:
        data = {"amount": str(amount), "currency": currency.lower()}
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = str(value)
        for option in ("statement_descriptor", "capture_method"):
            if option in self.config.options:
                data[option] = str(self.config.options[option])
        body = await self._request("POST", "/payment_intents", data=data, idempotency_key=idempotency_key)
        return self._to_intent(body)

    async def _confirm(self, reference, confirmation_data, idempotency_key) -> GatewayIntent:
        data = {k: str(confirmation_data[k]) for k in self.CONFIRM_FIELDS if k in confirmation_data}
        body = await self._request(
            "POST",
            f"/payment_intents/{reference}/confirm",
            data=data,
            idempotency_key=idempotency_key,
        )
        intent = self._to_intent(body)
        if body.get("status") == "requires_payment_method" and intent.decline_code:
            raise GatewayDeclined(decline_code=intent.decline_code)
        return intent

    async def _refund(self, reference, amount, idempotency_key) -> GatewayIntent:
        body = await self._request(
            "POST",
            "/refunds",
            data={"payment_intent": reference, "amount": str(amount)},
            idempotency_key=idempotency_key,
        )
        if body.get("status") == "failed":
            raise GatewayDeclined(decline_code=body.get("failure_reason") or "refund_failed")
        return GatewayIntent(
            reference=reference,
            status="refunded",
            amount=int(body.get("amount", amount)),
            currency=str(body.get("currency", "")).upper(),
            refunded_amount=int(body.get("amount", amount)),
        )

    async def _retrieve(self, reference) -> GatewayIntent:
        body = await self._request("GET", f"/payment_intents/{reference}", params={"expand[]": "latest_charge"})
        return self._to_intent(body)


ADAPTER_TYPES: dict[str, type[GatewayAdapter]] = {
    SandboxGateway.gateway_id: SandboxGateway,
    StripeGateway.gateway_id: StripeGateway,
}


class AdapterFactory:
    """Builds adapters from tenant configs; holds shared provider resources."""

    def __init__(
        self,
        request_store: GatewayRequestStore,
        sandbox_ledger: SandboxLedger | None = None,
        stripe_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.request_store = request_store
        self.sandbox_ledger = sandbox_ledger or SandboxLedger()
        self.stripe_transport = stripe_transport

    def adapter_type(self, gateway_id: str) -> type[GatewayAdapter]:
        adapter_type = ADAPTER_TYPES.get(gateway_id)
        if adapter_type is None:
            raise GatewayMisconfigured(f"unknown gateway provider: {gateway_id}")
        return adapter_type

    def build(self, config: GatewayConfig) -> GatewayAdapter:
        adapter_type = self.adapter_type(config.gateway_id)
        if adapter_type is SandboxGateway:
            return SandboxGateway(config, self.request_store, self.sandbox_ledger)
        if adapter_type is StripeGateway:
            return StripeGateway(config, self.request_store, transport=self.stripe_transport)
        return adapter_type(config, self.request_store)
