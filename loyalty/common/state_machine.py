"""Webhook processing stages and the transitions allowed between them."""

UNAUTHENTICATED = "UNAUTHENTICATED"
VALIDATED = "VALIDATED"
RESOLVED = "RESOLVED"
APPENDED = "APPENDED"
PROJECTED = "PROJECTED"
RESPONDED = "RESPONDED"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    UNAUTHENTICATED: {VALIDATED, RESPONDED},
    VALIDATED: {RESOLVED, RESPONDED},
    RESOLVED: {APPENDED, RESPONDED},
    # Duplicates skip projection: the summary is already consistent.
    APPENDED: {PROJECTED, RESPONDED},
    PROJECTED: {RESPONDED},
    RESPONDED: set(),
}

# The ledger entry commits together with its projection, so only a failure
# after PROJECTED leaves a durable write behind.
DURABLE_STAGES = {PROJECTED}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
