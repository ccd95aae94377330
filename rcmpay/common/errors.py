"""Error taxonomy shared by every RCM component.

Each concrete error has a stable `kind` that is the only identifier surfaced to
callers (together with a safe message). Families group kinds by how callers
and the orchestrator react to them.
"""


class RCMError(Exception):
    """Base class for all domain errors."""

    kind = "InternalError"
    family = "InternalError"
    status_code = 500
    default_message = "internal error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


# Auth ---------------------------------------------------------------------


class AuthError(RCMError):
    family = "AuthError"
    status_code = 401


class MissingToken(AuthError):
    kind = "MissingToken"
    default_message = "bearer token required"


class InvalidToken(AuthError):
    kind = "InvalidToken"
    default_message = "bearer token is malformed, expired or not trusted"


class InsufficientScope(AuthError):
    kind = "InsufficientScope"
    status_code = 403
    default_message = "token does not grant the required scope"


class TenantMismatch(AuthError):
    kind = "TenantMismatch"
    status_code = 403
    default_message = "resource belongs to a different tenant"


# Gateway ------------------------------------------------------------------


class GatewayError(RCMError):
    family = "GatewayError"
    status_code = 502
    retryable = False


class TransientGatewayError(GatewayError):
    retryable = True


class GatewayTimeout(TransientGatewayError):
    kind = "GatewayTimeout"
    status_code = 504
    default_message = "payment gateway did not respond in time"


class GatewayUnavailable(TransientGatewayError):
    kind = "GatewayUnavailable"
    status_code = 503
    default_message = "payment gateway is unavailable"


class GatewayDeclined(GatewayError):
    kind = "GatewayDeclined"
    status_code = 402
    default_message = "payment was declined by the gateway"

    def __init__(self, message: str | None = None, decline_code: str | None = None) -> None:
        self.decline_code = decline_code
        if message is None and decline_code:
            message = f"{self.default_message} ({decline_code})"
        super().__init__(message)


class UnsupportedOperation(GatewayError):
    kind = "UnsupportedOperation"
    status_code = 422
    default_message = "operation is not supported by the configured gateway"


class GatewayNotConfigured(GatewayError):
    kind = "GatewayNotConfigured"
    status_code = 404
    default_message = "no enabled payment gateway is configured"


class GatewayMisconfigured(GatewayError):
    kind = "GatewayMisconfigured"
    status_code = 422
    default_message = "gateway configuration is invalid"


# Validation ---------------------------------------------------------------


class ValidationError(RCMError):
    family = "ValidationError"
    status_code = 400


class InvalidTimeframe(ValidationError):
    kind = "InvalidTimeframe"
    default_message = "timeframe must be one of 7d, 30d, 90d, 1y or custom:start,end"


class InvalidPayload(ValidationError):
    kind = "InvalidPayload"
    status_code = 422
    default_message = "request payload is invalid"


class IdempotencyConflict(ValidationError):
    kind = "IdempotencyConflict"
    status_code = 409
    default_message = "idempotency key was already used for a different request"


# Consistency --------------------------------------------------------------


class ConsistencyError(RCMError):
    family = "ConsistencyError"
    status_code = 409


class InvalidTransition(ConsistencyError):
    kind = "InvalidTransition"
    default_message = "payment intent cannot move to the requested state"


class ConcurrentModification(ConsistencyError):
    kind = "ConcurrentModification"
    default_message = "payment intent was modified concurrently"


class StaleCache(ConsistencyError):
    kind = "StaleCache"
    default_message = "cached value is stale"


class ReconciliationPending(ConsistencyError):
    kind = "ReconciliationPending"
    default_message = "payment outcome is being verified with the gateway"


# Not found ----------------------------------------------------------------


class NotFound(RCMError):
    family = "NotFound"
    status_code = 404


class IntentNotFound(NotFound):
    kind = "IntentNotFound"
    default_message = "payment intent not found"
