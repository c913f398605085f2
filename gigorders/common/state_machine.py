"""Order state machine enforced by the lifecycle coordinator.

Pure functions only: callers load state, ask the machine what the next row
should look like, and persist the result themselves.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from gigorders.common.errors import Forbidden, InvalidTransition


PENDING = "PENDING"
ACCEPTED = "ACCEPTED"
REJECTED = "REJECTED"
IN_PROGRESS = "IN_PROGRESS"
DELIVERED = "DELIVERED"
COMPLETED = "COMPLETED"
DISPUTED = "DISPUTED"
CANCELLED = "CANCELLED"

BUYER = "BUYER"
PROVIDER = "PROVIDER"
SYSTEM = "SYSTEM"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {ACCEPTED, REJECTED},
    ACCEPTED: {IN_PROGRESS, CANCELLED},
    IN_PROGRESS: {DELIVERED, CANCELLED},
    DELIVERED: {COMPLETED, DISPUTED},
    DISPUTED: {COMPLETED, CANCELLED},
    COMPLETED: set(),
    CANCELLED: set(),
    REJECTED: set(),
}

# SYSTEM may take every edge; it is not listed per edge.
EDGE_ROLES: dict[tuple[str, str], set[str]] = {
    (PENDING, ACCEPTED): {PROVIDER},
    (PENDING, REJECTED): {PROVIDER},
    (ACCEPTED, IN_PROGRESS): {PROVIDER},
    (ACCEPTED, CANCELLED): {BUYER, PROVIDER},
    (IN_PROGRESS, DELIVERED): {PROVIDER},
    (IN_PROGRESS, CANCELLED): {BUYER, PROVIDER},
    (DELIVERED, COMPLETED): {BUYER},
    (DELIVERED, DISPUTED): {BUYER, PROVIDER},
    (DISPUTED, COMPLETED): {BUYER},
    (DISPUTED, CANCELLED): {BUYER, PROVIDER},
}

INITIAL_STATUS = PENDING
ACTIVE_STATUSES = frozenset({ACCEPTED, IN_PROGRESS, DELIVERED, DISPUTED})
TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)
EXTENDABLE_STATUSES = frozenset({ACCEPTED, IN_PROGRESS})
DEFAULT_CANCELLATION_REASON = "Not specified"


@dataclass(frozen=True)
class TransitionPlan:
    """Accepted transition plus the column values it implies."""

    from_status: str
    to_status: str
    role: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExtensionPlan:
    """Deadline extension computed for an order that keeps its status."""

    delivery_deadline: datetime
    delivery_extensions: int
    extension_reason: str


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def is_active(status: str | None) -> bool:
    return status in ACTIVE_STATUSES


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(current, new)


def authorize_transition(current: str, new: str, role: str) -> None:
    """Raise `Forbidden` when `role` may not take a legal edge."""

    if role == SYSTEM:
        return
    if role not in EDGE_ROLES.get((current, new), set()):
        raise Forbidden(f"{role} may not move an order from {current} to {new}")


def plan_transition(
    current: str,
    new: str,
    role: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> TransitionPlan:
    """Validate `current -> new` for `role` and compute derived fields.

    Edge legality is checked before the role so that an edge missing from the
    table is always `InvalidTransition`, whoever asks for it.
    """

    validate_transition(current, new)
    authorize_transition(current, new, role)
    fields: dict[str, Any] = {}
    if new in (CANCELLED, REJECTED):
        fields["cancellation_reason"] = reason or DEFAULT_CANCELLATION_REASON
        fields["cancelled_at"] = now
    elif new == COMPLETED:
        fields["completed_at"] = now
    return TransitionPlan(from_status=current, to_status=new, role=role, fields=fields)


def plan_extension(
    current: str,
    deadline: datetime,
    extensions: int,
    reason: str,
    days: int,
) -> ExtensionPlan:
    """Push the deadline forward without touching status."""

    if current not in EXTENDABLE_STATUSES:
        raise InvalidTransition(current, current, f"Cannot extend delivery of an order in {current}")
    if days <= 0:
        raise InvalidTransition(current, current, "Extension must move the deadline forward")
    return ExtensionPlan(
        delivery_deadline=deadline + timedelta(days=days),
        delivery_extensions=(extensions or 0) + 1,
        extension_reason=reason,
    )


def is_valid_path(statuses: list[str]) -> bool:
    """True when `statuses` starts at PENDING and follows legal edges only."""

    if not statuses or statuses[0] != INITIAL_STATUS:
        return False
    return all(new in ALLOWED_TRANSITIONS.get(current, set()) for current, new in zip(statuses, statuses[1:]))


def role_of(buyer_id: int, provider_user_id: int, user_id: int | None) -> str | None:
    """Resolve which side of an order `user_id` is on; `None` actor is the system."""

    if user_id is None:
        return SYSTEM
    if user_id == buyer_id:
        return BUYER
    if user_id == provider_user_id:
        return PROVIDER
    return None
