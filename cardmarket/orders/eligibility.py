# cardmarket/orders/eligibility.py
"""Buyer-initiated completion window."""
from __future__ import annotations

import math
from datetime import datetime, timedelta

from .domain import AUTO_COMPLETE_AFTER, Eligibility, Order, OrderStatus, RefundStatus
from .errors import ErrorKind

_HOUR = timedelta(hours=1)


def reference_time(order: Order) -> datetime:
    """
    Start of the waiting period.

    An explicit override wins; then the recorded payment confirmation;
    orders paid before that field existed fall back to updated_at.
    """
    if order.auto_completion_eligible_at is not None:
        return order.auto_completion_eligible_at
    if order.payment_confirmed_at is not None:
        return order.payment_confirmed_at
    if order.is_paid:
        return order.updated_at
    return order.created_at


def hours_until(opens_at: datetime, now: datetime) -> int:
    remaining = opens_at - now
    if remaining <= timedelta(0):
        return 0
    return math.ceil(remaining / _HOUR)


def evaluate(order: Order, now: datetime) -> Eligibility:
    opens_at = reference_time(order) + AUTO_COMPLETE_AFTER
    hours = hours_until(opens_at, now)

    def blocked(kind: ErrorKind, reason: str) -> Eligibility:
        return Eligibility(False, opens_at, hours, blocked_by=kind.value, reason=reason)

    if order.status == OrderStatus.COMPLETED:
        return blocked(ErrorKind.ALREADY_COMPLETED, "Order is already completed")
    if order.is_terminal:
        return blocked(ErrorKind.INVALID_STATE, "Cancelled orders cannot be completed")
    if order.has_dispute:
        return blocked(ErrorKind.DISPUTE_ACTIVE, "Cannot complete order while there is an active dispute")
    if order.refund_status in (RefundStatus.REQUESTED, RefundStatus.PROCESSING):
        return blocked(ErrorKind.REFUND_PENDING, "Cannot complete order while there is an active refund request")
    if not order.is_paid:
        return blocked(ErrorKind.NOT_ELIGIBLE, "Order must be paid before it can be completed")

    if now < opens_at:
        return blocked(
            ErrorKind.NOT_ELIGIBLE,
            f"You can complete this order in {hours} hour(s). "
            "Buyer completion is available 24 hours after payment.",
        )

    return Eligibility(True, opens_at, 0)
