"""Analytics snapshot and claim event schemas."""

from datetime import date, datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from rcmpay.common.db import as_utc


class TimeframeView(BaseModel):
    label: str
    start: datetime
    end: datetime
    granularity: str


class RevenueBucket(BaseModel):
    start: date
    gross_revenue: int
    refunds: int
    net_revenue: int


class DenialReason(BaseModel):
    reason: str
    count: int
    amount: int


class AnalyticsSnapshot(BaseModel):
    """Dashboard metrics for one tenant, currency and window.

    `metrics` values are always finite numbers. Names listed in `no_data` had
    no input in the window (their value is reported as 0).
    """

    tenant_id: str
    timeframe: TimeframeView
    currency: str
    metrics: dict[str, int | float]
    no_data: list[str]
    buckets: list[RevenueBucket]
    top_denial_reasons: list[DenialReason]
    computed_at: datetime


class DenialAnalytics(BaseModel):
    tenant_id: str
    timeframe: TimeframeView
    currency: str
    claims_denied: int
    denied_amount: int
    denial_rate: float
    no_data: bool
    top_denial_reasons: list[DenialReason]
    computed_at: datetime


class ClaimEventRequest(BaseModel):
    """A claim lifecycle fact from the billing system; `event_id` makes it idempotent."""

    event_id: str = Field(min_length=1, max_length=255, validation_alias=AliasChoices("event_id", "eventId"))
    kind: Literal["claim_submitted", "claim_paid", "claim_denied"]
    claim_id: str = Field(min_length=1, max_length=255, validation_alias=AliasChoices("claim_id", "claimId"))
    amount: int = Field(ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3, pattern="^[A-Za-z]{3}$")
    occurred_at: datetime | None = None
    service_date: date | None = None
    denial_reason: str | None = Field(default=None, max_length=255)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("occurred_at")
    @classmethod
    def to_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @model_validator(mode="after")
    def denial_needs_reason(self) -> "ClaimEventRequest":
        if self.kind == "claim_denied" and not self.denial_reason:
            self.denial_reason = "unspecified"
        return self


class ClaimEventResponse(BaseModel):
    record_id: str
    event_id: str
    kind: str
    claim_id: str
    amount: int
    currency: str
    occurred_at: datetime
    replayed: bool = False
