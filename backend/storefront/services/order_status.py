# Overview: Order status state machine; the only authority on status transitions.

"""
Storefront Order Status Policy

================================================================================
STATE MACHINE
================================================================================

    PENDING    -> CONFIRMED | PROCESSING | SHIPPED | CANCELLED
    CONFIRMED  -> PROCESSING | SHIPPED | CANCELLED
    PROCESSING -> SHIPPED | CANCELLED
    SHIPPED    -> DELIVERED | CANCELLED
    DELIVERED  (terminal)
    CANCELLED  (terminal)

RULES:
1. A transition to the same status is always allowed (no-op; callers that
   guard on "status unchanged" write no history row).
2. Every other pair not in ALLOWED_TRANSITIONS is rejected.
3. No code path (checkout, admin tooling, CLI) may write Order.status
   without asking can_transition / ensure_transition first.
================================================================================
"""

from __future__ import annotations

from ..validation import BadRequestError


PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
PROCESSING = "PROCESSING"
SHIPPED = "SHIPPED"
DELIVERED = "DELIVERED"
CANCELLED = "CANCELLED"

VALID_STATUSES = (PENDING, CONFIRMED, PROCESSING, SHIPPED, DELIVERED, CANCELLED)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({CONFIRMED, PROCESSING, SHIPPED, CANCELLED}),
    CONFIRMED: frozenset({PROCESSING, SHIPPED, CANCELLED}),
    PROCESSING: frozenset({SHIPPED, CANCELLED}),
    SHIPPED: frozenset({DELIVERED, CANCELLED}),
    DELIVERED: frozenset(),  # terminal
    CANCELLED: frozenset(),  # terminal
}


class InvalidTransitionError(BadRequestError):
    """Raised when a status change is not in the transition table."""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            f"Invalid status transition from {from_status} to {to_status}",
            details={"from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


def validate_status(status: str) -> str:
    """
    Normalize and validate a status value.

    Raises:
        BadRequestError: If status is not one of VALID_STATUSES
    """
    normalized = str(status).strip().upper() if status is not None else ""
    if normalized not in VALID_STATUSES:
        raise BadRequestError(
            f"Invalid status '{status}'. Must be one of: {', '.join(VALID_STATUSES)}"
        )
    return normalized


def can_transition(from_status: str, to_status: str) -> bool:
    if from_status == to_status:
        return True
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def ensure_transition(from_status: str, to_status: str) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)


def is_terminal(status: str) -> bool:
    return not ALLOWED_TRANSITIONS.get(status)
