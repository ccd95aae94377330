"""Payment intent state machine transitions enforced by the orchestrator."""

from rcmpay.common.errors import InvalidTransition

CREATED = "created"
REQUIRES_CONFIRMATION = "requires_confirmation"
CONFIRMED = "confirmed"
SETTLED = "settled"
FAILED = "failed"
REFUNDED = "refunded"

STATUSES = (CREATED, REQUIRES_CONFIRMATION, CONFIRMED, SETTLED, FAILED, REFUNDED)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    CREATED: {REQUIRES_CONFIRMATION, FAILED},
    REQUIRES_CONFIRMATION: {CONFIRMED, FAILED},
    CONFIRMED: {SETTLED, REFUNDED},
    # Settled intents stay immutable apart from a refund.
    SETTLED: {REFUNDED},
    FAILED: set(),
    REFUNDED: set(),
}

TERMINAL_STATES = frozenset({SETTLED, FAILED, REFUNDED})


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if not can_transition(current, new):
        raise InvalidTransition(f"invalid transition: {current} -> {new}")
