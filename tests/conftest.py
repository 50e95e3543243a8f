"""Shared fixtures: a frozen clock, stores, a recording notifier and an order factory."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Tuple
from uuid import uuid4

import pytest
from sqlalchemy.pool import StaticPool

from cardmarket.db import init_db, make_engine, make_session_factory
from cardmarket.orders import (
    FrozenClock,
    MemoryOrderStore,
    Order,
    OrderLifecycle,
    OrderStatus,
    PaymentStatus,
    SqlOrderStore,
)

START = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

BUYER = "buyer-1"
SELLER = "seller-1"
ADMIN = "admin-1"
STRANGER = "someone-else"


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, Any, Dict[str, Any]]] = []

    def notify(self, user_id, kind, payload) -> None:
        self.sent.append((user_id, kind, payload))

    def kinds_for(self, user_id: str) -> List[str]:
        return [k.value for (u, k, _) in self.sent if u == user_id]


class BrokenNotifier:
    def notify(self, user_id, kind, payload) -> None:
        raise RuntimeError("mail server down")


class ScriptedGenerator:
    """Hands out pre-chosen (code, token) pairs in order."""

    def __init__(self, *pairs: Tuple[str, str]) -> None:
        self._pairs = list(pairs)
        self.calls = 0

    def generate(self) -> Tuple[str, str]:
        self.calls += 1
        return self._pairs.pop(0)


class StaticUsers:
    def __init__(self, names: Dict[str, str]) -> None:
        self._names = names

    def display_name(self, user_id: str):
        return self._names.get(user_id)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def store() -> MemoryOrderStore:
    return MemoryOrderStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def lifecycle(store, clock, notifier) -> OrderLifecycle:
    return OrderLifecycle(
        store=store,
        clock=clock,
        notifier=notifier,
        users=StaticUsers({SELLER: "CardShark"}),
        admin_ids=[ADMIN],
    )


def order_values(now: datetime, **overrides: Any) -> Dict[str, Any]:
    values: Dict[str, Any] = dict(
        id=f"ord_{uuid4().hex[:12]}",
        buyer_id=BUYER,
        seller_id=SELLER,
        listing_id="lst_charizard",
        listing_title="Charizard Base Set Holo",
        amount_cents=25000,
        created_at=now,
        updated_at=now,
        is_pickup=True,
        status=OrderStatus.PAID,
        payment_status=PaymentStatus.PAID,
        payment_confirmed_at=now,
    )
    values.update(overrides)
    return values


@pytest.fixture
def make_order(store, clock):
    def _make(**overrides: Any) -> Order:
        return store.add(Order(**order_values(clock.now(), **overrides)))

    return _make


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def sql_store(session_factory) -> SqlOrderStore:
    return SqlOrderStore(session_factory)


@pytest.fixture
def env_jwt(monkeypatch) -> Iterator[None]:
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("JWT_ALG", "HS256")
    yield
