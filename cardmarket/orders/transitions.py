# cardmarket/orders/transitions.py
"""
Order status state machine.

    pending --(payment confirmed)--> paid
    paid --> awaiting_shipping --> shipped --> completed
    pending | paid | awaiting_shipping --(pickup / buyer completion)--> completed
    pending | paid | awaiting_shipping | shipped --> cancelled

completed and cancelled are terminal.
"""
from __future__ import annotations

from typing import FrozenSet, Set, Tuple

from .domain import TERMINAL_STATUSES, OrderStatus

CANCELLABLE_FROM: FrozenSet[OrderStatus] = frozenset([
    OrderStatus.PENDING,
    OrderStatus.PAID,
    OrderStatus.AWAITING_SHIPPING,
    OrderStatus.SHIPPED,
])

ALLOWED_TRANSITIONS: FrozenSet[Tuple[OrderStatus, OrderStatus]] = frozenset([
    # Shipping path
    (OrderStatus.PENDING, OrderStatus.PAID),
    (OrderStatus.PAID, OrderStatus.AWAITING_SHIPPING),
    (OrderStatus.AWAITING_SHIPPING, OrderStatus.SHIPPED),
    (OrderStatus.SHIPPED, OrderStatus.COMPLETED),
    # Pickup hand-off and buyer completion
    (OrderStatus.PENDING, OrderStatus.COMPLETED),
    (OrderStatus.PAID, OrderStatus.COMPLETED),
    (OrderStatus.AWAITING_SHIPPING, OrderStatus.COMPLETED),
    # Cancellation edges
    *((s, OrderStatus.CANCELLED) for s in CANCELLABLE_FROM),
])


def is_valid_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    if from_status in TERMINAL_STATUSES:
        return False
    return (from_status, to_status) in ALLOWED_TRANSITIONS


def allowed_from(status: OrderStatus) -> Set[OrderStatus]:
    return {to for (frm, to) in ALLOWED_TRANSITIONS if frm == status}


def describe(from_status: OrderStatus, to_status: OrderStatus) -> str:
    return f"{from_status.value} -> {to_status.value}"
