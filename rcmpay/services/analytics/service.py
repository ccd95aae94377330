"""Dashboard analytics over the append-only transaction projection.

Metric formulas (amounts are integer minor units of the requested currency,
records restricted to `start <= occurred_at < end`):

    gross_revenue        sum(payment_settled.amount)
    refunds              sum(payment_refunded.amount)
    net_revenue          gross_revenue - refunds
    claim_payments       sum(claim_paid.amount)
    net_collections      net_revenue + claim_payments
    payments_settled     count(payment_settled)
    refunds_count        count(payment_refunded)
    average_payment      gross_revenue / payments_settled
    claims_submitted     count(claim_submitted)
    claims_billed        sum(claim_submitted.amount)
    claims_paid          count(claim_paid)
    claims_denied        count(claim_denied)
    denied_amount        sum(claim_denied.amount)
    denial_rate          claims_denied / (claims_paid + claims_denied)
    collection_rate      claim_payments / claims_billed
    avg_days_to_payment  mean(claim_paid date - service_date) in whole days,
                         over paid claims that carry a service date

A ratio with a zero denominator reports 0.0 and its name is added to
`no_data`. Rates are rounded to 4 places, averages to 2.
"""

import time
from collections import Counter, defaultdict
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from rcmpay.common.config import settings
from rcmpay.common.db import as_utc, utcnow
from rcmpay.common.errors import IdempotencyConflict
from rcmpay.common.logging import logger
from rcmpay.common.metrics import analytics_compute_seconds
from rcmpay.services.analytics.models import (
    CLAIM_DENIED,
    CLAIM_PAID,
    CLAIM_SUBMITTED,
    PAYMENT_REFUNDED,
    PAYMENT_SETTLED,
    TransactionRecord,
)
from rcmpay.services.analytics.schemas import (
    AnalyticsSnapshot,
    ClaimEventRequest,
    ClaimEventResponse,
    DenialAnalytics,
    DenialReason,
    RevenueBucket,
    TimeframeView,
)
from rcmpay.services.analytics.timeframe import Timeframe, bucket_start, bucket_starts, parse_timeframe
from rcmpay.services.auth.schemas import AuthContext
from rcmpay.services.cache.service import SCOPE_ANALYTICS, CacheKey, CacheLayer

TOP_DENIAL_REASONS = 5


def _ratio(numerator: int, denominator: int, places: int) -> float | None:
    if denominator == 0:
        return None
    return round(numerator / denominator, places)


def compute_metrics(records: list[TransactionRecord], timeframe: Timeframe) -> dict:
    """Pure aggregation over records already filtered to the window.

    Returns `metrics`, `no_data`, `buckets` and `top_denial_reasons`.
    """

    records = sorted(records, key=lambda r: (as_utc(r.occurred_at), r.record_id))
    sums: dict[str, int] = defaultdict(int)
    counts: dict[str, int] = defaultdict(int)
    bucket_totals: dict = {start: {"gross": 0, "refunds": 0} for start in bucket_starts(timeframe)}
    denial_counts: Counter = Counter()
    denial_amounts: dict[str, int] = defaultdict(int)
    payment_days: list[int] = []

    for record in records:
        sums[record.kind] += record.amount
        counts[record.kind] += 1
        occurred_at = as_utc(record.occurred_at)
        if record.kind in (PAYMENT_SETTLED, PAYMENT_REFUNDED):
            bucket = bucket_totals.setdefault(
                bucket_start(occurred_at, timeframe.granularity), {"gross": 0, "refunds": 0}
            )
            bucket["gross" if record.kind == PAYMENT_SETTLED else "refunds"] += record.amount
        elif record.kind == CLAIM_DENIED:
            reason = record.denial_reason or "unspecified"
            denial_counts[reason] += 1
            denial_amounts[reason] += record.amount
        elif record.kind == CLAIM_PAID and record.service_date is not None:
            payment_days.append((occurred_at.date() - record.service_date).days)

    gross = sums[PAYMENT_SETTLED]
    refunds = sums[PAYMENT_REFUNDED]
    claim_payments = sums[CLAIM_PAID]
    decided = counts[CLAIM_PAID] + counts[CLAIM_DENIED]

    ratios = {
        "average_payment": _ratio(gross, counts[PAYMENT_SETTLED], 2),
        "denial_rate": _ratio(counts[CLAIM_DENIED], decided, 4),
        "collection_rate": _ratio(claim_payments, sums[CLAIM_SUBMITTED], 4),
        "avg_days_to_payment": _ratio(sum(payment_days), len(payment_days), 2),
    }
    metrics: dict[str, int | float] = {
        "gross_revenue": gross,
        "refunds": refunds,
        "net_revenue": gross - refunds,
        "claim_payments": claim_payments,
        "net_collections": gross - refunds + claim_payments,
        "payments_settled": counts[PAYMENT_SETTLED],
        "refunds_count": counts[PAYMENT_REFUNDED],
        "claims_submitted": counts[CLAIM_SUBMITTED],
        "claims_billed": sums[CLAIM_SUBMITTED],
        "claims_paid": counts[CLAIM_PAID],
        "claims_denied": counts[CLAIM_DENIED],
        "denied_amount": sums[CLAIM_DENIED],
    }
    no_data = sorted(name for name, value in ratios.items() if value is None)
    metrics.update({name: 0.0 if value is None else value for name, value in ratios.items()})

    buckets = [
        RevenueBucket(
            start=start,
            gross_revenue=totals["gross"],
            refunds=totals["refunds"],
            net_revenue=totals["gross"] - totals["refunds"],
        )
        for start, totals in sorted(bucket_totals.items())
    ]
    reasons = sorted(denial_counts, key=lambda reason: (-denial_counts[reason], -denial_amounts[reason], reason))
    top_denial_reasons = [
        DenialReason(reason=reason, count=denial_counts[reason], amount=denial_amounts[reason])
        for reason in reasons[:TOP_DENIAL_REASONS]
    ]
    return {
        "metrics": metrics,
        "no_data": no_data,
        "buckets": buckets,
        "top_denial_reasons": top_denial_reasons,
    }


class AnalyticsAggregator:
    """Computes and caches dashboard snapshots per tenant."""

    def __init__(
        self,
        session_factory,
        cache: CacheLayer,
        ttl_seconds: float = 300,
        service_name: str = "rcm-service",
        default_currency: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.service_name = service_name
        self.default_currency = (default_currency or settings.default_currency).upper()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def compute_dashboard(self, tenant_id: str, timeframe: Timeframe, currency: str | None = None) -> AnalyticsSnapshot:
        """Aggregate directly from the store, bypassing the cache."""

        currency = (currency or self.default_currency).upper()
        started = time.perf_counter()
        with self.session_factory() as db:
            records = (
                db.execute(
                    select(TransactionRecord).where(
                        TransactionRecord.tenant_id == tenant_id,
                        TransactionRecord.currency == currency,
                        TransactionRecord.occurred_at >= timeframe.start,
                        TransactionRecord.occurred_at < timeframe.end,
                    )
                )
                .scalars()
                .all()
            )
        computed = compute_metrics(list(records), timeframe)
        analytics_compute_seconds.labels(service=self.service_name).observe(time.perf_counter() - started)
        return AnalyticsSnapshot(
            tenant_id=tenant_id,
            timeframe=TimeframeView(
                label=timeframe.label,
                start=timeframe.start,
                end=timeframe.end,
                granularity=timeframe.granularity,
            ),
            currency=currency,
            computed_at=self.clock(),
            **computed,
        )

    async def get_dashboard(
        self,
        ctx: AuthContext,
        timeframe: str | None = None,
        granularity: str | None = None,
        currency: str | None = None,
    ) -> tuple[AnalyticsSnapshot, bool]:
        """Cached dashboard for the caller's tenant; returns (snapshot, served_from_cache)."""

        window = parse_timeframe(timeframe, granularity, now=self.clock())
        currency = (currency or self.default_currency).upper()
        computed = False

        async def compute() -> dict:
            nonlocal computed
            computed = True
            return self.compute_dashboard(ctx.tenant_id, window, currency).model_dump(mode="json")

        raw = await self.cache.get_or_compute(
            CacheKey(
                tenant_id=ctx.tenant_id,
                scope=SCOPE_ANALYTICS,
                timeframe=window.signature,
                query=f"dashboard:{currency}",
            ),
            compute,
            self.ttl_seconds,
        )
        return AnalyticsSnapshot.model_validate(raw), not computed

    async def denial_analytics(
        self, ctx: AuthContext, timeframe: str | None = None, currency: str | None = None
    ) -> tuple[DenialAnalytics, bool]:
        snapshot, cached = await self.get_dashboard(ctx, timeframe, currency=currency)
        return (
            DenialAnalytics(
                tenant_id=snapshot.tenant_id,
                timeframe=snapshot.timeframe,
                currency=snapshot.currency,
                claims_denied=int(snapshot.metrics["claims_denied"]),
                denied_amount=int(snapshot.metrics["denied_amount"]),
                denial_rate=float(snapshot.metrics["denial_rate"]),
                no_data="denial_rate" in snapshot.no_data,
                top_denial_reasons=snapshot.top_denial_reasons,
                computed_at=snapshot.computed_at,
            ),
            cached,
        )

    def record_claim_event(self, ctx: AuthContext, event: ClaimEventRequest) -> ClaimEventResponse:
        """Append one claim fact; a repeated `event_id` returns the stored row."""

        source_key = f"claim:{event.event_id}"
        record = TransactionRecord(
            tenant_id=ctx.tenant_id,
            kind=event.kind,
            amount=event.amount,
            currency=event.currency,
            occurred_at=event.occurred_at or utcnow(),
            source_key=source_key,
            claim_id=event.claim_id,
            service_date=event.service_date,
            denial_reason=event.denial_reason if event.kind == CLAIM_DENIED else None,
        )
        with self.session_factory() as db:
            db.add(record)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = db.execute(
                    select(TransactionRecord).where(
                        TransactionRecord.tenant_id == ctx.tenant_id,
                        TransactionRecord.source_key == source_key,
                    )
                ).scalar_one()
                if (existing.kind, existing.claim_id, existing.amount) != (event.kind, event.claim_id, event.amount):
                    raise IdempotencyConflict("claim event id was already used for a different event")
                return self._claim_response(event.event_id, existing, replayed=True)

        self.cache.invalidate(ctx.tenant_id, SCOPE_ANALYTICS)
        logger.info(
            "claim_event_recorded kind=%s claim_id=%s amount=%s currency=%s",
            record.kind,
            record.claim_id,
            record.amount,
            record.currency,
        )
        return self._claim_response(event.event_id, record)

    @staticmethod
    def _claim_response(event_id: str, record: TransactionRecord, replayed: bool = False) -> ClaimEventResponse:
        return ClaimEventResponse(
            record_id=record.record_id,
            event_id=event_id,
            kind=record.kind,
            claim_id=record.claim_id or "",
            amount=record.amount,
            currency=record.currency,
            occurred_at=as_utc(record.occurred_at),
            replayed=replayed,
        )
