"""Order placement saga transitions enforced by the checkout service."""

PAYMENT_VERIFYING = "PAYMENT_VERIFYING"
PAYMENT_FAILED = "PAYMENT_FAILED"
PAYMENT_VERIFIED = "PAYMENT_VERIFIED"
LABEL_PURCHASING = "LABEL_PURCHASING"
LABEL_FAILED = "LABEL_FAILED"
LABEL_PURCHASED = "LABEL_PURCHASED"
PERSISTING = "PERSISTING"
PERSIST_FAILED = "PERSIST_FAILED"
PERSISTED = "PERSISTED"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PAYMENT_VERIFYING: {PAYMENT_VERIFIED, PAYMENT_FAILED},
    # The buyer may finish a pending payment and resubmit the same order.
    PAYMENT_FAILED: {PAYMENT_VERIFYING},
    PAYMENT_VERIFIED: {LABEL_PURCHASING},
    LABEL_PURCHASING: {LABEL_PURCHASED, LABEL_FAILED},
    # Paid but unlabeled: resolved by support, never automatically.
    LABEL_FAILED: set(),
    LABEL_PURCHASED: {PERSISTING},
    PERSISTING: {PERSISTED, PERSIST_FAILED},
    PERSIST_FAILED: {PERSISTED},
    PERSISTED: set(),
}

# States whose confirmation was already sent to the buyer.
CONFIRMED_STATES = frozenset({PERSISTED, PERSIST_FAILED})
# States a placement passes through while one request is still running.
IN_FLIGHT_STATES = frozenset({PAYMENT_VERIFYING, PAYMENT_VERIFIED, LABEL_PURCHASING, LABEL_PURCHASED, PERSISTING})
# States that need a human or the retry worker to close out.
RECONCILIATION_STATES = frozenset({LABEL_FAILED, PERSIST_FAILED})


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
