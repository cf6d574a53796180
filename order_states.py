"""
Order lifecycle.

Every status change made by the workflows and the admin endpoints is checked
against ALLOWED_TRANSITIONS here, so illegal moves (cancel after dispatch,
return before delivery, ...) are rejected in one place.
"""
from typing import Dict, FrozenSet, Union

from errors import ConflictError
from schemas import OrderStatus

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.INITIATED: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.READY_FOR_DISPATCH, OrderStatus.CANCELLED}),
    OrderStatus.READY_FOR_DISPATCH: frozenset({OrderStatus.DISPATCHED, OrderStatus.CANCELLED}),
    OrderStatus.DISPATCHED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset({
        OrderStatus.RETURNED,
        OrderStatus.PARTIALLY_RETURNED,
        OrderStatus.EXCHANGED,
        OrderStatus.PARTIALLY_EXCHANGED,
    }),
    OrderStatus.PARTIALLY_RETURNED: frozenset({OrderStatus.RETURNED, OrderStatus.PARTIALLY_RETURNED}),
    OrderStatus.PARTIALLY_EXCHANGED: frozenset({OrderStatus.EXCHANGED, OrderStatus.PARTIALLY_EXCHANGED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.RETURNED: frozenset(),
    OrderStatus.EXCHANGED: frozenset(),
}

# Statuses only the cancel/return/exchange workflows may set.
WORKFLOW_STATUSES = frozenset({
    OrderStatus.CANCELLED,
    OrderStatus.RETURNED,
    OrderStatus.PARTIALLY_RETURNED,
    OrderStatus.EXCHANGED,
    OrderStatus.PARTIALLY_EXCHANGED,
})

_ACTIONS = {
    OrderStatus.CANCELLED: "cancelled",
    OrderStatus.RETURNED: "returned",
    OrderStatus.PARTIALLY_RETURNED: "returned",
    OrderStatus.EXCHANGED: "exchanged",
    OrderStatus.PARTIALLY_EXCHANGED: "exchanged",
}


def _status(value: Union[str, OrderStatus]) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ConflictError(f"Unknown order status: {value}")


def can_transition(current: Union[str, OrderStatus], target: Union[str, OrderStatus]) -> bool:
    return _status(target) in ALLOWED_TRANSITIONS[_status(current)]


def ensure_transition(current: Union[str, OrderStatus], target: Union[str, OrderStatus]) -> OrderStatus:
    current_status, target_status = _status(current), _status(target)
    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        action = _ACTIONS.get(target_status, f"moved to {target_status.value}")
        raise ConflictError(f"Order cannot be {action} in {current_status.value} status")
    return target_status


def is_cancellable(current: Union[str, OrderStatus]) -> bool:
    return can_transition(current, OrderStatus.CANCELLED)


def is_terminal(current: Union[str, OrderStatus]) -> bool:
    return not ALLOWED_TRANSITIONS[_status(current)]


def initial_status(online: bool) -> OrderStatus:
    # Orders without an online authorisation step skip Initiated.
    return OrderStatus.INITIATED if online else OrderStatus.CONFIRMED


def settle_partial(all_items_affected: bool, full: OrderStatus, partial: OrderStatus) -> OrderStatus:
    return full if all_items_affected else partial
