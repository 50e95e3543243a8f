# cardmarket/orders/errors.py
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_STATE = "invalid_state"
    CREDENTIAL_EXPIRED = "credential_expired"
    CREDENTIAL_NOT_FOUND = "credential_not_found"
    CREDENTIAL_INVALID = "credential_invalid"
    ALREADY_COMPLETED = "already_completed"
    NOT_ELIGIBLE = "not_eligible"
    DISPUTE_ACTIVE = "dispute_active"
    REFUND_PENDING = "refund_pending"
    CONFLICT = "conflict"


class OrderError(Exception):
    """
    A rejected order operation.

    Carries the order id, the acting user and the attempted transition so
    callers can write audit lines without re-deriving context.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        order_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        transition: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.order_id = order_id
        self.actor_id = actor_id
        self.transition = transition
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "error": self.kind.value,
            "message": self.message,
            "order_id": self.order_id,
        }
        out.update(self.details)
        return out

    def __repr__(self) -> str:
        return f"OrderError({self.kind.value!r}, {self.message!r}, order_id={self.order_id!r})"


class OrderNotFound(LookupError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"order {order_id} not found")
        self.order_id = order_id


class StoreConflict(Exception):
    """The stored order no longer matches the expected precondition."""

    def __init__(self, order_id: str, expected: Dict[str, Any]) -> None:
        super().__init__(f"order {order_id} changed concurrently (expected {sorted(expected)})")
        self.order_id = order_id
        self.expected = expected
