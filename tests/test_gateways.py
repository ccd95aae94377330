"""Gateway registry configuration, selection and capability checks."""

import pytest

from conftest import TENANT_A, TENANT_B, make_ctx, run
from rcmpay.common.errors import GatewayMisconfigured, GatewayNotConfigured, UnsupportedOperation
from rcmpay.services.gateways.adapters import SandboxGateway, StripeGateway
from rcmpay.services.gateways.schemas import ALL_CAPABILITIES, CONFIRM, REFUND, GatewayConfigureRequest


def configure(container, tenant_id=TENANT_A, **fields):
    return run(container.registry.configure(make_ctx(tenant_id), GatewayConfigureRequest(**fields)))


def test_configure_returns_view_without_credentials(container):
    view = configure(
        container,
        provider_id="stripe",
        credentials_ref="env:STRIPE_TEST_KEY",
        options={"capture_method": "automatic"},
    )

    assert view.gateway_id == "stripe"
    assert view.display_name == "Stripe"
    assert view.credentials_configured is True
    assert view.capabilities == sorted(ALL_CAPABILITIES)
    assert "credentials_ref" not in view.model_dump()


def test_list_gateways_is_tenant_scoped(container):
    configure(container, provider_id="sandbox", is_default=True)

    assert [v.gateway_id for v in run(container.registry.list_gateways(make_ctx(TENANT_A)))] == ["sandbox"]
    assert run(container.registry.list_gateways(make_ctx(TENANT_B))) == []


def test_configure_accepts_camel_case_provider():
    assert GatewayConfigureRequest.model_validate({"providerId": "sandbox"}).provider_id == "sandbox"


def test_resolve_prefers_default_then_first_enabled(container):
    configure(container, provider_id="sandbox")
    configure(container, provider_id="stripe", credentials_ref="env:STRIPE_TEST_KEY")
    assert run(container.registry.resolve(TENANT_A)).gateway_id == "sandbox"

    configure(container, provider_id="stripe", credentials_ref="env:STRIPE_TEST_KEY", is_default=True)
    assert isinstance(run(container.registry.resolve(TENANT_A)), StripeGateway)
    assert isinstance(run(container.registry.resolve(TENANT_A, "sandbox")), SandboxGateway)


def test_only_one_default_per_tenant(container):
    configure(container, provider_id="sandbox", is_default=True)
    configure(container, provider_id="stripe", credentials_ref="env:STRIPE_TEST_KEY", is_default=True)

    defaults = [v.gateway_id for v in run(container.registry.list_gateways(make_ctx())) if v.is_default]
    assert defaults == ["stripe"]


def test_disabled_or_missing_gateways_are_not_resolved(container):
    with pytest.raises(GatewayNotConfigured):
        run(container.registry.resolve(TENANT_A))

    configure(container, provider_id="sandbox", enabled=False)
    with pytest.raises(GatewayNotConfigured):
        run(container.registry.resolve(TENANT_A))
    with pytest.raises(GatewayNotConfigured):
        run(container.registry.resolve(TENANT_A, "stripe"))


def test_reconfiguring_refreshes_cached_configs(container):
    configure(container, provider_id="sandbox", is_default=True)
    assert run(container.registry.resolve(TENANT_A)).config.enabled is True

    configure(container, provider_id="sandbox", enabled=False)
    with pytest.raises(GatewayNotConfigured):
        run(container.registry.resolve(TENANT_A))


@pytest.mark.parametrize(
    "fields",
    [
        {"provider_id": "paypal"},
        {"provider_id": "sandbox", "capabilities": ["teleport"]},
        {"provider_id": "sandbox", "options": {"auto_settle": "yes"}},
        {"provider_id": "sandbox", "options": {"currency_floor": True}},
        {"provider_id": "sandbox", "credentials_ref": "vault:secret/path"},
        {"provider_id": "stripe"},
    ],
)
def test_invalid_configurations_are_rejected(container, fields):
    with pytest.raises(GatewayMisconfigured):
        configure(container, **fields)
    assert run(container.registry.list_gateways(make_ctx())) == []


def test_capability_subset_blocks_operations(container, configure_sandbox):
    configure_sandbox(capabilities=["create_intent", "confirm", "retrieve", "fetch_config"])
    adapter = run(container.registry.resolve(TENANT_A))

    container.registry.ensure_capability(adapter, CONFIRM)
    with pytest.raises(UnsupportedOperation):
        container.registry.ensure_capability(adapter, REFUND)
    with pytest.raises(UnsupportedOperation):
        run(container.registry.dispatch(adapter, REFUND, "sbx_pi_1", 100, "key-1"))


def test_capabilities_survive_reconfiguration(container, configure_sandbox):
    configure_sandbox(capabilities=["create_intent", "retrieve"])
    view = configure_sandbox(display_name="Sandbox (QA)")

    assert view.capabilities == ["create_intent", "retrieve"]
    assert view.display_name == "Sandbox (QA)"
