"""Dead letter row state machine enforced by the DLQ service."""

PENDING_REVIEW = "PENDING_REVIEW"
REQUEUED = "REQUEUED"
UNRECOVERABLE = "UNRECOVERABLE"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING_REVIEW: {REQUEUED, UNRECOVERABLE},
    # A re-queued row stays as history; operators may queue it again or exclude it.
    REQUEUED: {REQUEUED, UNRECOVERABLE},
    UNRECOVERABLE: set(),
}


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")
