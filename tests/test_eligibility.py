from datetime import timedelta

import pytest

from cardmarket.orders import Order, OrderStatus, PaymentStatus, RefundStatus
from cardmarket.orders.eligibility import evaluate, hours_until, reference_time
from tests.conftest import START, order_values

pytestmark = [pytest.mark.unit]

SECOND = timedelta(seconds=1)
DAY = timedelta(hours=24)


def _order(**overrides) -> Order:
    return Order(**order_values(START, **overrides))


class TestReferenceTime:
    def test_explicit_override_wins(self):
        override = START + timedelta(hours=5)
        o = _order(auto_completion_eligible_at=override, payment_confirmed_at=START)
        assert reference_time(o) == override

    def test_payment_confirmation_preferred_over_updated_at(self):
        o = _order(payment_confirmed_at=START, updated_at=START + timedelta(hours=10))
        assert reference_time(o) == START

    def test_paid_without_confirmation_falls_back_to_updated_at(self):
        updated = START + timedelta(hours=3)
        o = _order(payment_confirmed_at=None, updated_at=updated)
        assert reference_time(o) == updated

    def test_unpaid_uses_created_at(self):
        o = _order(
            payment_confirmed_at=None,
            payment_status=PaymentStatus.AWAITING_PAYMENT,
            status=OrderStatus.PENDING,
            updated_at=START + timedelta(hours=3),
        )
        assert reference_time(o) == START


class TestWindow:
    def test_closed_one_second_before(self):
        e = evaluate(_order(), START + DAY - SECOND)
        assert not e.eligible
        assert e.blocked_by == "not_eligible"
        assert e.hours_remaining == 1

    def test_open_one_second_after(self):
        e = evaluate(_order(), START + DAY + SECOND)
        assert e.eligible
        assert e.hours_remaining == 0
        assert e.eligible_at == START + DAY

    def test_open_exactly_at_boundary(self):
        assert evaluate(_order(), START + DAY).eligible

    def test_hours_remaining_rounds_up(self):
        e = evaluate(_order(), START + timedelta(hours=1, minutes=30))
        assert e.hours_remaining == 23

    def test_hours_until_floors_at_zero(self):
        assert hours_until(START, START + DAY) == 0


class TestBlockers:
    def test_cancelled_blocks_after_window(self):
        e = evaluate(_order(status=OrderStatus.CANCELLED), START + DAY * 3)
        assert not e.eligible
        assert e.blocked_by == "invalid_state"
        assert e.reason == "Cancelled orders cannot be completed"

    @pytest.mark.parametrize("offset", [timedelta(0), DAY + SECOND, timedelta(days=30)])
    def test_dispute_blocks_at_any_time(self, offset):
        e = evaluate(_order(has_dispute=True), START + offset)
        assert not e.eligible
        assert e.blocked_by == "dispute_active"

    @pytest.mark.parametrize("status", [RefundStatus.REQUESTED, RefundStatus.PROCESSING])
    def test_open_refund_blocks(self, status):
        e = evaluate(_order(refund_status=status), START + DAY * 3)
        assert not e.eligible
        assert e.blocked_by == "refund_pending"

    def test_resolved_refund_does_not_block(self):
        assert evaluate(_order(refund_status=RefundStatus.RESOLVED), START + DAY * 3).eligible

    def test_unpaid_blocks(self):
        o = _order(payment_status=PaymentStatus.AWAITING_PAYMENT, status=OrderStatus.PENDING, payment_confirmed_at=None)
        e = evaluate(o, START + DAY * 3)
        assert not e.eligible
        assert e.blocked_by == "not_eligible"

    def test_completed_blocks(self):
        e = evaluate(_order(status=OrderStatus.COMPLETED), START + DAY * 3)
        assert not e.eligible
        assert e.blocked_by == "already_completed"
