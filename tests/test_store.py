import json
from datetime import timedelta

import pytest

from cardmarket.models import Notification, User
from cardmarket.notifications import SqlNotificationDispatcher
from cardmarket.orders import (
    ErrorKind,
    EventKind,
    MemoryOrderStore,
    Order,
    OrderError,
    OrderLifecycle,
    OrderNotFound,
    OrderStatus,
    RefundStatus,
    StoreConflict,
)
from cardmarket.users import SqlUserDirectory
from tests.conftest import BUYER, SELLER, START, order_values

pytestmark = [pytest.mark.integration]


@pytest.fixture(params=["memory", "sql"])
def any_store(request, sql_store):
    return MemoryOrderStore() if request.param == "memory" else sql_store


def _order(**overrides) -> Order:
    return Order(**order_values(START, **overrides))


class TestConditionalUpdate:
    def test_round_trip_keeps_types(self, any_store):
        order = any_store.add(_order(refund_status=RefundStatus.REQUESTED))
        got = any_store.get(order.id)
        assert got == order
        assert got.status is OrderStatus.PAID
        assert got.created_at.tzinfo is not None

    def test_write_lands_when_expectation_holds(self, any_store):
        order = any_store.add(_order())
        updated = any_store.conditional_update(
            order.id,
            {"status": OrderStatus.PAID, "pickup_token": None},
            {"status": OrderStatus.COMPLETED, "completed_at": START + timedelta(hours=1)},
        )
        assert updated.status == OrderStatus.COMPLETED
        assert any_store.get(order.id).completed_at == START + timedelta(hours=1)

    def test_stale_expectation_conflicts(self, any_store):
        order = any_store.add(_order())
        any_store.conditional_update(order.id, {"status": OrderStatus.PAID}, {"status": OrderStatus.CANCELLED})
        with pytest.raises(StoreConflict):
            any_store.conditional_update(order.id, {"status": OrderStatus.PAID}, {"status": OrderStatus.COMPLETED})
        assert any_store.get(order.id).status == OrderStatus.CANCELLED

    def test_missing_order(self, any_store):
        with pytest.raises(OrderNotFound):
            any_store.conditional_update("ord_missing", {}, {"has_dispute": True})

    def test_unknown_field_rejected(self, any_store):
        order = any_store.add(_order())
        with pytest.raises(ValueError):
            any_store.conditional_update(order.id, {}, {"colour": "red"})

    def test_id_is_immutable(self, any_store):
        order = any_store.add(_order())
        with pytest.raises(ValueError):
            any_store.conditional_update(order.id, {}, {"id": "ord_other"})


class TestFindByCredential:
    def test_matches_code_token_and_redeemed(self, any_store):
        a = any_store.add(_order(pickup_code="123456", pickup_token="tok-a"))
        b = any_store.add(_order(redeemed_pickup_code="654321", redeemed_pickup_token="tok-b"))

        assert [o.id for o in any_store.find_by_credential("123456")] == [a.id]
        assert [o.id for o in any_store.find_by_credential("tok-a")] == [a.id]
        assert [o.id for o in any_store.find_by_credential("tok-b")] == [b.id]
        assert any_store.find_by_credential("000000") == []

    def test_shipping_orders_ignored(self, any_store):
        any_store.add(_order(is_pickup=False, pickup_code="123456", pickup_token="tok-a"))
        assert any_store.find_by_credential("123456") == []


def test_pickup_flow_on_sql_store(sql_store, session_factory, clock):
    with session_factory() as session:
        session.add(User(id=SELLER, username="cardshark", display_name="Card Shark"))
        session.commit()

    lc = OrderLifecycle(
        store=sql_store,
        clock=clock,
        notifier=SqlNotificationDispatcher(session_factory),
        users=SqlUserDirectory(session_factory),
    )
    order = sql_store.add(_order())

    cred = lc.generate_pickup_credential(order.id, SELLER)
    assert lc.generate_pickup_credential(order.id, SELLER).is_existing
    assert lc.verify_pickup_credential(cred.pickup_code, BUYER).seller_name == "Card Shark"

    done = lc.complete_pickup(order.id, BUYER, "buyer", cred.pickup_token)
    assert done.status == OrderStatus.COMPLETED
    assert done.pickup_token is None

    with pytest.raises(OrderError) as exc:
        lc.verify_pickup_credential(cred.pickup_token, BUYER)
    assert exc.value.kind == ErrorKind.ALREADY_COMPLETED

    with session_factory() as session:
        rows = session.query(Notification).filter(Notification.user_id == BUYER).all()
        kinds = sorted(r.kind for r in rows)
        assert kinds == sorted([EventKind.ORDER_UPDATE.value] * 2 + [EventKind.REVIEW_PROMPT.value])
        assert all(json.loads(r.payload_json)["order_id"] == order.id for r in rows)
