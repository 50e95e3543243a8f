"""
Order lifecycle core.

    from cardmarket.orders import OrderLifecycle, MemoryOrderStore

    lifecycle = OrderLifecycle(MemoryOrderStore())
    cred = lifecycle.generate_pickup_credential(order_id, seller_id)
    lifecycle.verify_pickup_credential(cred.pickup_code, buyer_id)
    lifecycle.complete_pickup(order_id, buyer_id, "buyer", cred.pickup_code)
"""

from .clock import Clock, FrozenClock, SystemClock
from .credentials import CredentialGenerator, PickupVerifier
from .domain import (
    Eligibility,
    EventKind,
    Order,
    OrderStatus,
    OrderSummary,
    PaymentStatus,
    PickupCredential,
    PickupRole,
    RefundStatus,
)
from .eligibility import evaluate
from .errors import ErrorKind, OrderError, OrderNotFound, StoreConflict
from .lifecycle import OrderLifecycle
from .store import MemoryOrderStore, OrderStore, SqlOrderStore

__all__ = [
    "Clock",
    "FrozenClock",
    "SystemClock",
    "CredentialGenerator",
    "PickupVerifier",
    "Eligibility",
    "EventKind",
    "Order",
    "OrderStatus",
    "OrderSummary",
    "PaymentStatus",
    "PickupCredential",
    "PickupRole",
    "RefundStatus",
    "evaluate",
    "ErrorKind",
    "OrderError",
    "OrderNotFound",
    "StoreConflict",
    "OrderLifecycle",
    "MemoryOrderStore",
    "OrderStore",
    "SqlOrderStore",
]
