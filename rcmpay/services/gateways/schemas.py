"""Gateway-facing data shapes shared by adapters, registry and API."""

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field

CREATE_INTENT = "create_intent"
CONFIRM = "confirm"
REFUND = "refund"
RETRIEVE = "retrieve"
FETCH_CONFIG = "fetch_config"

ALL_CAPABILITIES = (CREATE_INTENT, CONFIRM, REFUND, RETRIEVE, FETCH_CONFIG)

GatewayStatus = Literal["requires_confirmation", "confirmed", "settled", "failed", "refunded"]


class GatewayIntent(BaseModel):
    """Gateway-side view of a payment intent, normalized across providers."""

    reference: str
    status: GatewayStatus
    amount: int
    currency: str
    refunded_amount: int = 0
    decline_code: str | None = None


class GatewayConfig(BaseModel):
    """Full tenant gateway configuration as held by the registry."""

    tenant_id: str
    gateway_id: str
    display_name: str
    credentials_ref: str | None = None
    capabilities: list[str]
    options: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    is_default: bool = False
    is_sandbox: bool = False

    def view(self) -> "GatewayConfigView":
        return GatewayConfigView(
            gateway_id=self.gateway_id,
            display_name=self.display_name,
            capabilities=sorted(self.capabilities),
            enabled=self.enabled,
            is_default=self.is_default,
            is_sandbox=self.is_sandbox,
            credentials_configured=self.credentials_ref is not None,
        )


class GatewayConfigView(BaseModel):
    """Caller-visible gateway configuration; never carries credentials."""

    gateway_id: str
    display_name: str
    capabilities: list[str]
    enabled: bool
    is_default: bool
    is_sandbox: bool
    credentials_configured: bool


class GatewayConfigureRequest(BaseModel):
    """Payload accepted by `POST gateways/configure`."""

    provider_id: str = Field(
        min_length=1,
        max_length=64,
        validation_alias=AliasChoices("provider_id", "providerId"),
    )
    display_name: str | None = Field(default=None, max_length=120)
    credentials_ref: str | None = Field(default=None, max_length=256)
    capabilities: list[str] | None = None
    options: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    is_default: bool = False
    is_sandbox: bool = False
