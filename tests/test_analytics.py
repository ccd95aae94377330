"""Dashboard aggregation, claim events and cache interplay."""

from datetime import date, datetime, timezone

import pytest

from conftest import TENANT_A, TENANT_B, make_ctx, run
from rcmpay.common.errors import IdempotencyConflict
from rcmpay.services.analytics.models import (
    CLAIM_DENIED,
    CLAIM_PAID,
    CLAIM_SUBMITTED,
    PAYMENT_REFUNDED,
    PAYMENT_SETTLED,
    TransactionRecord,
)
from rcmpay.services.analytics.schemas import ClaimEventRequest
from rcmpay.services.analytics.service import compute_metrics
from rcmpay.services.analytics.timeframe import parse_timeframe
from rcmpay.services.payments.schemas import ConfirmRequest, PaymentIntentCreateRequest

JANUARY = parse_timeframe("custom:2026-01-01,2026-01-31")
RATIOS = ["average_payment", "avg_days_to_payment", "collection_rate", "denial_rate"]


def record(kind: str, amount: int, day: int, hour: int = 12, **fields) -> TransactionRecord:
    return TransactionRecord(
        record_id=f"{kind}-{day}-{hour}-{amount}",
        tenant_id=TENANT_A,
        kind=kind,
        amount=amount,
        currency="USD",
        occurred_at=datetime(2026, 1, day, hour, tzinfo=timezone.utc),
        source_key=f"{kind}-{day}-{hour}-{amount}",
        **fields,
    )


def claim(event_id: str, kind: str = CLAIM_SUBMITTED, amount: int = 1000, **fields) -> ClaimEventRequest:
    return ClaimEventRequest(event_id=event_id, kind=kind, claim_id=f"claim-{event_id}", amount=amount, **fields)


SAMPLE = [
    record(PAYMENT_SETTLED, 10000, 5),
    record(PAYMENT_SETTLED, 5000, 6),
    record(PAYMENT_REFUNDED, 2000, 6, hour=18),
    record(CLAIM_SUBMITTED, 1000, 2),
    record(CLAIM_SUBMITTED, 1000, 3),
    record(CLAIM_PAID, 1500, 20, service_date=date(2026, 1, 10)),
    record(CLAIM_DENIED, 400, 21, denial_reason="CO-50"),
]


def test_empty_window_reports_zeros_and_no_data():
    result = compute_metrics([], JANUARY)

    assert result["no_data"] == RATIOS
    assert all(value == 0 for value in result["metrics"].values())
    assert len(result["buckets"]) == 31
    assert result["top_denial_reasons"] == []


def test_metric_formulas():
    metrics = compute_metrics(SAMPLE, JANUARY)["metrics"]

    assert metrics["gross_revenue"] == 15000
    assert metrics["refunds"] == 2000
    assert metrics["net_revenue"] == 13000
    assert metrics["claim_payments"] == 1500
    assert metrics["net_collections"] == 14500
    assert metrics["payments_settled"] == 2
    assert metrics["refunds_count"] == 1
    assert metrics["average_payment"] == 7500.0
    assert metrics["claims_submitted"] == 2
    assert metrics["claims_billed"] == 2000
    assert metrics["claims_paid"] == 1
    assert metrics["claims_denied"] == 1
    assert metrics["denied_amount"] == 400
    assert metrics["denial_rate"] == 0.5
    assert metrics["collection_rate"] == 0.75
    assert metrics["avg_days_to_payment"] == 10.0


def test_revenue_buckets_follow_granularity():
    daily = {b.start: b for b in compute_metrics(SAMPLE, JANUARY)["buckets"]}
    assert daily[date(2026, 1, 6)].net_revenue == 3000
    assert daily[date(2026, 1, 7)].gross_revenue == 0

    weekly = parse_timeframe("custom:2026-01-01,2026-01-31", granularity="week")
    buckets = compute_metrics(SAMPLE, weekly)["buckets"]
    assert buckets[0].start == date(2025, 12, 29)
    assert buckets[1].start == date(2026, 1, 5)
    assert buckets[1].gross_revenue == 15000
    assert buckets[1].refunds == 2000


def test_results_do_not_depend_on_record_order():
    assert compute_metrics(SAMPLE, JANUARY) == compute_metrics(list(reversed(SAMPLE)), JANUARY)


def test_top_denial_reasons_rank_by_count_then_amount():
    denials = [
        record(CLAIM_DENIED, 100, 2, denial_reason="CO-97"),
        record(CLAIM_DENIED, 900, 3, denial_reason="CO-16"),
        record(CLAIM_DENIED, 100, 4, denial_reason="CO-97"),
        record(CLAIM_DENIED, 50, 5, denial_reason="PR-1"),
    ]

    reasons = compute_metrics(denials, JANUARY)["top_denial_reasons"]

    assert [r.reason for r in reasons] == ["CO-97", "CO-16", "PR-1"]
    assert reasons[0].count == 2
    assert reasons[0].amount == 200


def test_window_is_half_open(container):
    ctx = make_ctx()
    aggregator = container.aggregator
    occurrences = {
        "before": datetime(2025, 12, 31, 23, 59, 59, tzinfo=timezone.utc),
        "first": datetime(2026, 1, 1, tzinfo=timezone.utc),
        "last": datetime(2026, 1, 31, 23, 59, tzinfo=timezone.utc),
        "after": datetime(2026, 2, 1, tzinfo=timezone.utc),
    }
    for name, occurred_at in occurrences.items():
        aggregator.record_claim_event(ctx, claim(name, occurred_at=occurred_at))

    snapshot = aggregator.compute_dashboard(TENANT_A, JANUARY)

    assert snapshot.metrics["claims_submitted"] == 2
    assert snapshot.currency == "USD"


def test_dashboard_is_cached_until_a_claim_event_lands(container):
    ctx = make_ctx()
    aggregator = container.aggregator

    first, first_cached = run(aggregator.get_dashboard(ctx, "30d"))
    second, second_cached = run(aggregator.get_dashboard(ctx, "30d"))
    assert (first_cached, second_cached) == (False, True)
    assert first.no_data == RATIOS

    aggregator.record_claim_event(ctx, claim("evt-1", kind=CLAIM_PAID, amount=700))
    third, third_cached = run(aggregator.get_dashboard(ctx, "30d"))

    assert third_cached is False
    assert third.metrics["claim_payments"] == 700
    assert "denial_rate" not in third.no_data


def test_dashboards_are_scoped_per_tenant_and_currency(container):
    aggregator = container.aggregator
    aggregator.record_claim_event(make_ctx(TENANT_A), claim("evt-usd", kind=CLAIM_PAID, amount=500))
    aggregator.record_claim_event(make_ctx(TENANT_A), claim("evt-eur", kind=CLAIM_PAID, amount=900, currency="eur"))

    usd, _ = run(aggregator.get_dashboard(make_ctx(TENANT_A)))
    eur, _ = run(aggregator.get_dashboard(make_ctx(TENANT_A), currency="EUR"))
    other, _ = run(aggregator.get_dashboard(make_ctx(TENANT_B)))

    assert usd.metrics["claim_payments"] == 500
    assert eur.metrics["claim_payments"] == 900
    assert eur.currency == "EUR"
    assert other.metrics["claim_payments"] == 0


def test_denial_analytics_view(container):
    ctx = make_ctx()
    aggregator = container.aggregator
    aggregator.record_claim_event(ctx, claim("evt-paid", kind=CLAIM_PAID, amount=800))
    for i in range(3):
        aggregator.record_claim_event(ctx, claim(f"evt-denied-{i}", kind=CLAIM_DENIED, amount=100, denial_reason="CO-50"))

    denials, _ = run(aggregator.denial_analytics(ctx, "7d"))

    assert denials.claims_denied == 3
    assert denials.denied_amount == 300
    assert denials.denial_rate == 0.75
    assert denials.no_data is False
    assert denials.top_denial_reasons[0].reason == "CO-50"


def test_denied_claim_without_reason_is_unspecified():
    assert claim("evt-x", kind=CLAIM_DENIED).denial_reason == "unspecified"


def test_claim_event_replay_is_idempotent(container):
    ctx = make_ctx()
    aggregator = container.aggregator

    first = aggregator.record_claim_event(ctx, claim("evt-replay", amount=1200))
    again = aggregator.record_claim_event(ctx, claim("evt-replay", amount=1200))

    assert again.replayed is True
    assert again.record_id == first.record_id
    assert aggregator.compute_dashboard(TENANT_A, parse_timeframe("7d")).metrics["claims_billed"] == 1200


def test_claim_event_id_reuse_with_different_content_conflicts(container):
    ctx = make_ctx()
    container.aggregator.record_claim_event(ctx, claim("evt-conflict", amount=1200))

    with pytest.raises(IdempotencyConflict):
        container.aggregator.record_claim_event(ctx, claim("evt-conflict", amount=999))


def test_settled_payment_moves_the_dashboard(container, configure_sandbox):
    configure_sandbox()
    ctx = make_ctx()
    before, _ = run(container.aggregator.get_dashboard(ctx, "7d"))

    intent = run(
        container.orchestrator.create_intent(
            ctx, PaymentIntentCreateRequest(amount=5000, currency="USD", idempotency_key="idem-dashboard")
        )
    )
    run(container.orchestrator.confirm_payment(ctx, intent.intent_id, ConfirmRequest()))
    after, cached = run(container.aggregator.get_dashboard(ctx, "7d"))

    assert cached is False
    assert after.metrics["gross_revenue"] - before.metrics["gross_revenue"] == 5000
