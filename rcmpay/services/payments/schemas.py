"""API request/response schemas for payment intent endpoints."""

from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

from rcmpay.common.db import as_utc
from rcmpay.common.state_machine import STATUSES


class PaymentIntentCreateRequest(BaseModel):
    """Intent creation payload; amounts are integer minor units."""

    amount: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3, pattern="^[A-Za-z]{3}$")
    metadata: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str = Field(
        min_length=5,
        max_length=255,
        validation_alias=AliasChoices("idempotency_key", "idempotencyKey"),
    )
    gateway_id: str | None = Field(default=None, validation_alias=AliasChoices("gateway_id", "gatewayId"))

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()


class ConfirmRequest(BaseModel):
    confirmation_data: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("confirmation_data", "confirmationData"),
    )


class RefundRequest(BaseModel):
    """Refund payload; `amount` defaults to the full intent amount."""

    amount: int | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=255)


class PaymentIntentResponse(BaseModel):
    """Caller-visible payment intent."""

    id: str
    tenant_id: str
    provider_id: str
    amount: int
    currency: str
    gateway_id: str
    status: str
    idempotency_key: str
    refunded_amount: int
    pending_verification: bool
    failure_code: str | None
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_intent(cls, intent) -> "PaymentIntentResponse":
        return cls(
            id=intent.intent_id,
            tenant_id=intent.tenant_id,
            provider_id=intent.provider_id,
            amount=intent.amount,
            currency=intent.currency,
            gateway_id=intent.gateway_id,
            status=intent.status,
            idempotency_key=intent.idempotency_key,
            refunded_amount=intent.refunded_amount or 0,
            pending_verification=bool(intent.pending_verification),
            failure_code=intent.failure_code,
            metadata=dict(intent.intent_metadata or {}),
            created_at=intent.created_at,
            updated_at=intent.updated_at,
        )


class HistoryFilters(BaseModel):
    """Payment history query: filters plus 1-based pagination."""

    status: str | None = None
    gateway_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1)

    @field_validator("status")
    @classmethod
    def known_status(cls, value: str | None) -> str | None:
        if value is not None and value not in STATUSES:
            raise ValueError(f"status must be one of {', '.join(STATUSES)}")
        return value

    @field_validator("date_from", "date_to")
    @classmethod
    def to_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)
