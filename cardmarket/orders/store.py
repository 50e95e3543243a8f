# cardmarket/orders/store.py
"""
Order persistence.

Every write is a compare-and-swap on a single order: the caller passes the
field values it read, and the write only lands if they still hold.
"""
from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from ..models import OrderRow
from .domain import ORDER_FIELDS, Order, OrderStatus, PaymentStatus, RefundStatus
from .errors import OrderNotFound, StoreConflict


class OrderStore(Protocol):
    def add(self, order: Order) -> Order: ...

    def get(self, order_id: str) -> Optional[Order]: ...

    def find_by_credential(self, credential: str) -> List[Order]: ...

    def conditional_update(
        self,
        order_id: str,
        expected: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> Order: ...


def _check_fields(names) -> None:
    unknown = set(names) - ORDER_FIELDS
    if unknown:
        raise ValueError(f"Unknown order fields: {sorted(unknown)}")
    if "id" in names:
        raise ValueError("Order id is immutable")


# -------------------
# In-memory store
# -------------------
class MemoryOrderStore:
    """Single-process store; the lock makes each CAS atomic."""

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._lock = threading.Lock()

    def add(self, order: Order) -> Order:
        with self._lock:
            if order.id in self._orders:
                raise ValueError(f"Order {order.id} already exists")
            self._orders[order.id] = order
            return order

    def get(self, order_id: str) -> Optional[Order]:
        with self._lock:
            return self._orders.get(order_id)

    def find_by_credential(self, credential: str) -> List[Order]:
        with self._lock:
            return [
                o for o in self._orders.values()
                if o.is_pickup and credential in (
                    o.pickup_code, o.pickup_token, o.redeemed_pickup_code, o.redeemed_pickup_token,
                )
            ]

    def conditional_update(self, order_id: str, expected: Mapping[str, Any], patch: Mapping[str, Any]) -> Order:
        _check_fields(expected)
        _check_fields(patch)
        with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                raise OrderNotFound(order_id)
            for name, value in expected.items():
                if getattr(current, name) != value:
                    raise StoreConflict(order_id, dict(expected))
            updated = replace(current, **patch)
            self._orders[order_id] = updated
            return updated


# -------------------
# SQLAlchemy store
# -------------------
def _db_value(v: Any) -> Any:
    return v.value if isinstance(v, Enum) else v


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def row_to_order(row: OrderRow) -> Order:
    values: Dict[str, Any] = {}
    for name in ORDER_FIELDS:
        v = getattr(row, name)
        if isinstance(v, datetime):
            v = _utc(v)
        values[name] = v
    values["status"] = OrderStatus(row.status)
    values["payment_status"] = PaymentStatus(row.payment_status)
    values["refund_status"] = RefundStatus(row.refund_status)
    return Order(**values)


def order_to_row(order: Order) -> OrderRow:
    return OrderRow(**{name: _db_value(getattr(order, name)) for name in ORDER_FIELDS})


class SqlOrderStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def add(self, order: Order) -> Order:
        with self._session_factory() as session:
            session.add(order_to_row(order))
            session.commit()
        return order

    def get(self, order_id: str) -> Optional[Order]:
        with self._session_factory() as session:
            row = session.get(OrderRow, order_id)
            return row_to_order(row) if row else None

    def find_by_credential(self, credential: str) -> List[Order]:
        stmt = select(OrderRow).where(
            OrderRow.is_pickup.is_(True),
            or_(
                OrderRow.pickup_code == credential,
                OrderRow.pickup_token == credential,
                OrderRow.redeemed_pickup_code == credential,
                OrderRow.redeemed_pickup_token == credential,
            ),
        )
        with self._session_factory() as session:
            return [row_to_order(r) for r in session.execute(stmt).scalars()]

    def conditional_update(self, order_id: str, expected: Mapping[str, Any], patch: Mapping[str, Any]) -> Order:
        _check_fields(expected)
        _check_fields(patch)

        conds = [OrderRow.id == order_id]
        for name, value in expected.items():
            col = getattr(OrderRow, name)
            conds.append(col.is_(None) if value is None else col == _db_value(value))

        stmt = (
            update(OrderRow)
            .where(*conds)
            .values(**{k: _db_value(v) for k, v in patch.items()})
            .execution_options(synchronize_session=False)
        )

        with self._session_factory() as session:
            result = session.execute(stmt)
            if result.rowcount == 0:
                session.rollback()
                if session.get(OrderRow, order_id) is None:
                    raise OrderNotFound(order_id)
                raise StoreConflict(order_id, dict(expected))
            session.commit()
            row = session.get(OrderRow, order_id, populate_existing=True)
            return row_to_order(row)
