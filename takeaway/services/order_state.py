"""
Order State Machine

Legal status moves, one table per actor role:

    ADMIN     pending   -> paid, cancelled
              paid      -> confirmed, cancelled
              confirmed -> preparing, cancelled
              preparing -> ready
              ready     -> collected
    OWNER     pending -> confirmed -> preparing -> ready -> collected
    CUSTOMER  pending -> cancelled, paid -> cancelled
    SYSTEM    pending -> paid            (payment gateway confirmation)

collected and cancelled are terminal. Every table must name every status,
which is checked when this module is imported, so a new OrderStatus member
cannot silently fall through a lookup.

Author: Khalil Bannouri
Version: 4.0.0
"""

import logging
from typing import Dict, FrozenSet, Optional

from takeaway.core.exceptions import InvalidTransitionError, ValidationError
from takeaway.enums import ActorRole, OrderStatus
from takeaway.models import Order, utcnow

logger = logging.getLogger(__name__)

S = OrderStatus
TransitionTable = Dict[OrderStatus, FrozenSet[OrderStatus]]

TERMINAL_STATES = frozenset({S.COLLECTED, S.CANCELLED})

ADMIN_TRANSITIONS: TransitionTable = {
    S.PENDING: frozenset({S.PAID, S.CANCELLED}),
    S.PAID: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.PREPARING, S.CANCELLED}),
    S.PREPARING: frozenset({S.READY}),
    S.READY: frozenset({S.COLLECTED}),
    S.COLLECTED: frozenset(),
    S.CANCELLED: frozenset(),
}

OWNER_TRANSITIONS: TransitionTable = {
    S.PENDING: frozenset({S.CONFIRMED}),
    S.PAID: frozenset(),
    S.CONFIRMED: frozenset({S.PREPARING}),
    S.PREPARING: frozenset({S.READY}),
    S.READY: frozenset({S.COLLECTED}),
    S.COLLECTED: frozenset(),
    S.CANCELLED: frozenset(),
}

CUSTOMER_TRANSITIONS: TransitionTable = {
    S.PENDING: frozenset({S.CANCELLED}),
    S.PAID: frozenset({S.CANCELLED}),
    S.CONFIRMED: frozenset(),
    S.PREPARING: frozenset(),
    S.READY: frozenset(),
    S.COLLECTED: frozenset(),
    S.CANCELLED: frozenset(),
}

SYSTEM_TRANSITIONS: TransitionTable = {
    S.PENDING: frozenset({S.PAID}),
    S.PAID: frozenset(),
    S.CONFIRMED: frozenset(),
    S.PREPARING: frozenset(),
    S.READY: frozenset(),
    S.COLLECTED: frozenset(),
    S.CANCELLED: frozenset(),
}

TRANSITIONS: Dict[ActorRole, TransitionTable] = {
    ActorRole.ADMIN: ADMIN_TRANSITIONS,
    ActorRole.OWNER: OWNER_TRANSITIONS,
    ActorRole.CUSTOMER: CUSTOMER_TRANSITIONS,
    ActorRole.SYSTEM: SYSTEM_TRANSITIONS,
}


def _check_tables() -> None:
    for role in ActorRole:
        table = TRANSITIONS.get(role)
        if table is None:
            raise RuntimeError(f"No transition table for role {role.value}")
        missing = set(OrderStatus) - set(table)
        if missing:
            names = ", ".join(sorted(s.value for s in missing))
            raise RuntimeError(f"Transition table for {role.value} is missing: {names}")
        for terminal in TERMINAL_STATES:
            if table[terminal]:
                raise RuntimeError(f"{role.value} table allows leaving terminal state {terminal.value}")


_check_tables()


def allowed_transitions(current: OrderStatus, role: ActorRole) -> FrozenSet[OrderStatus]:
    return TRANSITIONS[role][current]


def can_transition(current: OrderStatus, new: OrderStatus, role: ActorRole) -> bool:
    return new in TRANSITIONS[role][current]


def validate_transition(current: OrderStatus, new: OrderStatus, role: ActorRole) -> None:
    """Raise InvalidTransitionError unless ``role`` may move ``current`` to ``new``."""
    allowed = allowed_transitions(current, role)
    if new not in allowed:
        raise InvalidTransitionError(current.value, new.value, [s.value for s in allowed])


def apply_transition(
    order: Order,
    new_status: OrderStatus,
    role: ActorRole,
    preparation_time: Optional[int] = None,
) -> OrderStatus:
    """
    Move ``order`` to ``new_status`` in memory; the caller commits.

    Args:
        order: Order row loaded in the caller's unit of work
        new_status: Requested status
        role: Acting role; selects the transition table
        preparation_time: Minutes, only accepted when entering ``confirmed``

    Returns:
        The status the order had before the move

    Raises:
        InvalidTransitionError: move not in the role's table
        ValidationError: preparation_time given for another status, or not positive
    """
    if preparation_time is not None:
        if new_status != S.CONFIRMED:
            raise ValidationError("Preparation time can only be set when confirming an order")
        if isinstance(preparation_time, bool) or not isinstance(preparation_time, int) or preparation_time <= 0:
            raise ValidationError("Preparation time must be a positive whole number of minutes")

    previous = order.status
    validate_transition(previous, new_status, role)

    order.status = new_status
    if preparation_time is not None:
        order.preparation_time = preparation_time
    order.updated_at = utcnow()

    logger.info(f"Order #{order.id}: {previous.value} → {new_status.value} by {role.value}")
    return previous
