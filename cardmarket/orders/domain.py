# cardmarket/orders/domain.py
from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

# Fixed windows of the pickup and buyer-completion flows.
PICKUP_CODE_TTL = timedelta(minutes=30)
AUTO_COMPLETE_AFTER = timedelta(hours=24)
REFUND_REQUEST_WINDOW = timedelta(days=30)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    AWAITING_SHIPPING = "awaiting_shipping"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"


class RefundStatus(str, Enum):
    NONE = "none"
    REQUESTED = "requested"
    PROCESSING = "processing"
    RESOLVED = "resolved"


class PickupRole(str, Enum):
    SELLER = "seller"
    BUYER = "buyer"


class EventKind(str, Enum):
    SALE = "sale"
    ORDER_UPDATE = "order_update"
    REVIEW_PROMPT = "review_prompt"
    REFUND_REQUESTED = "refund_requested"
    REFUND_RESOLVED = "refund_resolved"


# No operation moves an order out of these.
TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Statuses from which a pickup credential may be issued or redeemed.
PICKUP_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PAID, OrderStatus.AWAITING_SHIPPING})

# Fields wiped whenever a credential stops being usable.
CLEARED_CREDENTIAL: Dict[str, Any] = {
    "pickup_code": None,
    "pickup_token": None,
    "pickup_code_created_at": None,
    "pickup_code_expires_at": None,
}


@dataclass(frozen=True)
class Order:
    id: str
    buyer_id: str
    seller_id: str
    listing_id: str
    amount_cents: int
    created_at: datetime
    updated_at: datetime
    listing_title: str = ""
    is_pickup: bool = False

    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.AWAITING_PAYMENT
    payment_confirmed_at: Optional[datetime] = None

    pickup_code: Optional[str] = None
    pickup_token: Optional[str] = None
    pickup_code_created_at: Optional[datetime] = None
    pickup_code_expires_at: Optional[datetime] = None
    seller_pickup_initiated: bool = False
    seller_pickup_initiated_at: Optional[datetime] = None
    pickup_completed: bool = False
    pickup_completed_at: Optional[datetime] = None
    redeemed_pickup_code: Optional[str] = None
    redeemed_pickup_token: Optional[str] = None

    has_dispute: bool = False
    refund_status: RefundStatus = RefundStatus.NONE
    refund_reason: Optional[str] = None
    refund_requested_at: Optional[datetime] = None
    review_submitted: bool = False

    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    auto_completion_eligible_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def has_credential(self) -> bool:
        return bool(self.pickup_code and self.pickup_token and self.pickup_code_expires_at)

    def has_active_credential(self, now: datetime) -> bool:
        return self.has_credential() and now <= self.pickup_code_expires_at

    def party_of(self, user_id: str) -> Optional[PickupRole]:
        if user_id == self.seller_id:
            return PickupRole.SELLER
        if user_id == self.buyer_id:
            return PickupRole.BUYER
        return None

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            v = getattr(self, f.name)
            if isinstance(v, Enum):
                v = v.value
            elif isinstance(v, datetime):
                v = v.isoformat()
            out[f.name] = v
        return out

    def public_view(self) -> Dict[str, Any]:
        """Order as shown to its parties: secrets and replay guards stripped."""
        view = self.as_dict()
        for k in ("pickup_code", "pickup_token", "redeemed_pickup_code", "redeemed_pickup_token"):
            view.pop(k, None)
        return view


ORDER_FIELDS = frozenset(f.name for f in fields(Order))


@dataclass(frozen=True)
class PickupCredential:
    order_id: str
    pickup_code: str
    pickup_token: str
    expires_at: datetime
    is_existing: bool


@dataclass(frozen=True)
class OrderSummary:
    order_id: str
    listing_title: str
    seller_name: str
    amount_cents: int
    expires_at: datetime
    # Only handed back to the order's buyer.
    pickup_token: Optional[str] = None


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    eligible_at: datetime
    hours_remaining: int
    # ErrorKind value of the blocking condition, if any.
    blocked_by: Optional[str] = None
    reason: str = ""
