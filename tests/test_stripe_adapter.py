"""Stripe adapter against a mocked HTTPS transport."""

from urllib.parse import parse_qs

import httpx
import pytest

from conftest import TENANT_A, run
from rcmpay.common.errors import GatewayDeclined, GatewayMisconfigured, GatewayTimeout, GatewayUnavailable
from rcmpay.services.gateways.adapters import GatewayRequestStore, StripeGateway
from rcmpay.services.gateways.schemas import ALL_CAPABILITIES, GatewayConfig


def intent_body(status="requires_payment_method", **extra) -> dict:
    return {"id": "pi_123", "object": "payment_intent", "amount": 5000, "currency": "usd", "status": status, **extra}


class StripeStub:
    """Records requests and answers with queued responses."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        status_code, body = response
        return httpx.Response(status_code, json=body)

    def form(self, index: int = -1) -> dict:
        return {k: v[0] for k, v in parse_qs(self.requests[index].content.decode()).items()}


@pytest.fixture(autouse=True)
def stripe_key(monkeypatch):
    monkeypatch.setenv("STRIPE_TEST_KEY", "sk_test_123")


def make_adapter(session_factory, stub: StripeStub, **options) -> StripeGateway:
    config = GatewayConfig(
        tenant_id=TENANT_A,
        gateway_id="stripe",
        display_name="Stripe",
        credentials_ref="env:STRIPE_TEST_KEY",
        capabilities=list(ALL_CAPABILITIES),
        options=options,
    )
    return StripeGateway(
        config,
        GatewayRequestStore(session_factory),
        api_base="https://stripe.test/v1",
        transport=httpx.MockTransport(stub),
        timeout_seconds=1,
    )


def test_create_intent_sends_form_and_idempotency_key(session_factory):
    stub = StripeStub((200, intent_body()))
    adapter = make_adapter(session_factory, stub, capture_method="automatic")

    intent = run(adapter.create_intent(5000, "USD", {"visit": "v-1"}, "intent-1:create"))

    request = stub.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/v1/payment_intents"
    assert request.headers["Authorization"] == "Bearer sk_test_123"
    assert request.headers["Idempotency-Key"] == "intent-1:create"
    assert stub.form() == {
        "amount": "5000",
        "currency": "usd",
        "metadata[visit]": "v-1",
        "capture_method": "automatic",
    }
    assert intent.reference == "pi_123"
    assert intent.status == "requires_confirmation"
    assert intent.currency == "USD"


def test_replayed_key_does_not_call_stripe_again(session_factory):
    stub = StripeStub((200, intent_body()))
    adapter = make_adapter(session_factory, stub)

    first = run(adapter.create_intent(5000, "USD", {}, "intent-2:create"))
    second = run(adapter.create_intent(5000, "USD", {}, "intent-2:create"))

    assert first == second
    assert len(stub.requests) == 1


@pytest.mark.parametrize(
    "stripe_status,expected",
    [("succeeded", "settled"), ("requires_capture", "confirmed"), ("processing", "confirmed")],
)
def test_confirm_maps_stripe_statuses(session_factory, stripe_status, expected):
    stub = StripeStub((200, intent_body(stripe_status)))
    adapter = make_adapter(session_factory, stub)

    intent = run(adapter.confirm("pi_123", {"payment_method": "pm_card_visa", "ignored": "x"}, "intent-3:confirm"))

    assert intent.status == expected
    assert stub.requests[0].url.path == "/v1/payment_intents/pi_123/confirm"
    assert stub.form() == {"payment_method": "pm_card_visa"}


def test_card_error_is_a_decline(session_factory):
    stub = StripeStub((402, {"error": {"type": "card_error", "code": "card_declined", "decline_code": "insufficient_funds"}}))
    adapter = make_adapter(session_factory, stub)

    with pytest.raises(GatewayDeclined) as excinfo:
        run(adapter.confirm("pi_123", {}, "intent-4:confirm"))
    assert excinfo.value.decline_code == "insufficient_funds"


@pytest.mark.parametrize(
    "response,error",
    [
        ((500, {"error": {"message": "boom"}}), GatewayUnavailable),
        ((429, {"error": {"message": "slow down"}}), GatewayUnavailable),
        ((401, {"error": {"message": "bad key"}}), GatewayMisconfigured),
        (httpx.ConnectTimeout("timed out"), GatewayTimeout),
        (httpx.ConnectError("refused"), GatewayUnavailable),
    ],
)
def test_provider_failures_map_to_gateway_errors(session_factory, response, error):
    adapter = make_adapter(session_factory, StripeStub(response))

    with pytest.raises(error):
        run(adapter.retrieve("pi_123"))


def test_failed_call_is_not_recorded_for_replay(session_factory):
    stub = StripeStub((503, {}), (200, intent_body()))
    adapter = make_adapter(session_factory, stub)

    with pytest.raises(GatewayUnavailable):
        run(adapter.create_intent(5000, "USD", {}, "intent-5:create"))
    assert run(adapter.create_intent(5000, "USD", {}, "intent-5:create")).reference == "pi_123"
    assert len(stub.requests) == 2


def test_retrieve_reports_refunds_from_latest_charge(session_factory):
    stub = StripeStub((200, intent_body("succeeded", latest_charge={"id": "ch_1", "amount_refunded": 2000})))
    adapter = make_adapter(session_factory, stub)

    intent = run(adapter.retrieve("pi_123"))

    assert intent.status == "refunded"
    assert intent.refunded_amount == 2000
    assert stub.requests[0].url.params["expand[]"] == "latest_charge"


def test_refund(session_factory):
    stub = StripeStub((200, {"id": "re_1", "object": "refund", "amount": 1500, "currency": "usd", "status": "succeeded"}))
    adapter = make_adapter(session_factory, stub)

    intent = run(adapter.refund("pi_123", 1500, "intent-6:refund"))

    assert intent.status == "refunded"
    assert intent.refunded_amount == 1500
    assert stub.form() == {"payment_intent": "pi_123", "amount": "1500"}


def test_missing_secret_is_a_misconfiguration(session_factory, monkeypatch):
    monkeypatch.delenv("STRIPE_TEST_KEY")
    stub = StripeStub((200, intent_body()))
    adapter = make_adapter(session_factory, stub)

    with pytest.raises(GatewayMisconfigured):
        run(adapter.retrieve("pi_123"))
    assert stub.requests == []


def test_unknown_option_is_rejected():
    config = GatewayConfig(
        tenant_id=TENANT_A,
        gateway_id="stripe",
        display_name="Stripe",
        credentials_ref="env:STRIPE_TEST_KEY",
        capabilities=list(ALL_CAPABILITIES),
        options={"webhook_secret": "whsec"},
    )
    with pytest.raises(GatewayMisconfigured):
        StripeGateway.validate_config(config)
