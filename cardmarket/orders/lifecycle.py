# cardmarket/orders/lifecycle.py
"""
OrderLifecycle: every state change of an order goes through here.

Each operation loads one order, checks role and status, computes the next
state and writes it with a single conditional update. Notifications are
sent after the write and can never undo it.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from ..notifications import NotificationDispatcher, NullNotificationDispatcher
from ..users import UserDirectory
from .clock import Clock, SystemClock
from .credentials import (
    CredentialGenerator,
    PickupVerifier,
    extract_credential,
    is_pickup_code,
    matches_active,
    matches_redeemed,
    render_pickup_qr,
)
from .domain import (
    CLEARED_CREDENTIAL,
    PICKUP_CODE_TTL,
    PICKUP_STATUSES,
    REFUND_REQUEST_WINDOW,
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
from .store import OrderStore
from .transitions import CANCELLABLE_FROM, allowed_from, describe, is_valid_transition

logger = logging.getLogger(__name__)

UNKNOWN_SELLER = "Unknown Seller"

# Shipping steps and who may take them.
_SHIPPING_STEPS: Dict[OrderStatus, Tuple[PickupRole, ...]] = {
    OrderStatus.AWAITING_SHIPPING: (PickupRole.SELLER,),
    OrderStatus.SHIPPED: (PickupRole.SELLER,),
    OrderStatus.COMPLETED: (PickupRole.SELLER, PickupRole.BUYER),
}


class OrderLifecycle:
    def __init__(
        self,
        store: OrderStore,
        clock: Optional[Clock] = None,
        generator: Optional[CredentialGenerator] = None,
        verifier: Optional[PickupVerifier] = None,
        notifier: Optional[NotificationDispatcher] = None,
        users: Optional[UserDirectory] = None,
        admin_ids: Iterable[str] = (),
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.generator = generator or CredentialGenerator()
        self.verifier = verifier or PickupVerifier()
        self.notifier = notifier or NullNotificationDispatcher()
        self.users = users
        self.admin_ids = frozenset(admin_ids)

    # -------------------
    # Helpers
    # -------------------
    def _reject(
        self,
        kind: ErrorKind,
        message: str,
        op: str,
        *,
        order_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        **details: Any,
    ) -> OrderError:
        logger.info("%s rejected order=%s actor=%s kind=%s: %s", op, order_id, actor_id, kind.value, message)
        return OrderError(kind, message, order_id=order_id, actor_id=actor_id, transition=op, details=details)

    def _load(self, order_id: str, actor_id: Optional[str], op: str) -> Order:
        order = self.store.get(order_id)
        if order is None:
            raise self._reject(ErrorKind.NOT_FOUND, "Order not found", op, order_id=order_id, actor_id=actor_id)
        return order

    def _is_admin(self, user_id: str) -> bool:
        return user_id in self.admin_ids

    def _write(
        self,
        order: Order,
        actor_id: Optional[str],
        op: str,
        expected: Mapping[str, Any],
        patch: Dict[str, Any],
        to_status: Optional[OrderStatus] = None,
    ) -> Order:
        if to_status is not None and not is_valid_transition(order.status, to_status):
            raise self._reject(
                ErrorKind.INVALID_STATE,
                f"Order cannot move from {order.status.value} to {to_status.value}",
                op, order_id=order.id, actor_id=actor_id,
                allowed=sorted(s.value for s in allowed_from(order.status)),
            )

        patch["updated_at"] = self.clock.now()
        try:
            updated = self.store.conditional_update(order.id, expected, patch)
        except OrderNotFound:
            raise self._reject(ErrorKind.NOT_FOUND, "Order not found", op, order_id=order.id, actor_id=actor_id) from None
        except StoreConflict:
            latest = self.store.get(order.id)
            if latest is not None and (latest.status == OrderStatus.COMPLETED or latest.pickup_completed):
                raise self._reject(
                    ErrorKind.ALREADY_COMPLETED, "Order was completed by another request",
                    op, order_id=order.id, actor_id=actor_id,
                ) from None
            raise self._reject(
                ErrorKind.CONFLICT, "Order changed while processing; reload and try again",
                op, order_id=order.id, actor_id=actor_id,
            ) from None

        edge = describe(order.status, to_status) if to_status else order.status.value
        logger.info("%s order=%s actor=%s %s", op, order.id, actor_id, edge)
        return updated

    def _notify(self, user_id: str, kind: EventKind, payload: Dict[str, Any]) -> None:
        try:
            self.notifier.notify(user_id, kind, payload)
        except Exception:
            # Delivery is best effort; the order write already happened.
            logger.exception("notification failed user=%s kind=%s order=%s", user_id, kind.value, payload.get("order_id"))

    def _seller_name(self, seller_id: str) -> str:
        if self.users is None:
            return UNKNOWN_SELLER
        try:
            return self.users.display_name(seller_id) or UNKNOWN_SELLER
        except Exception:
            logger.exception("seller lookup failed seller=%s", seller_id)
            return UNKNOWN_SELLER

    # -------------------
    # Reads
    # -------------------
    def get_order(self, order_id: str, actor_id: str) -> Order:
        order = self._load(order_id, actor_id, "get_order")
        if order.party_of(actor_id) is None and not self._is_admin(actor_id):
            raise self._reject(ErrorKind.FORBIDDEN, "Not your order", "get_order", order_id=order_id, actor_id=actor_id)
        return order

    def auto_completion_status(self, order_id: str, actor_id: str) -> Eligibility:
        op = "auto_completion_status"
        order = self._load(order_id, actor_id, op)
        if order.party_of(actor_id) is None:
            raise self._reject(ErrorKind.FORBIDDEN, "Not your order", op, order_id=order_id, actor_id=actor_id)
        return evaluate(order, self.clock.now())

    # -------------------
    # Pickup credential
    # -------------------
    def generate_pickup_credential(self, order_id: str, actor_id: str) -> PickupCredential:
        op = "generate_pickup_credential"
        order = self._load(order_id, actor_id, op)
        ctx = {"order_id": order_id, "actor_id": actor_id}

        if actor_id != order.seller_id:
            raise self._reject(ErrorKind.FORBIDDEN, "Only the seller can generate pickup codes", op, **ctx)
        if not order.is_pickup:
            raise self._reject(ErrorKind.INVALID_STATE, "This operation is only valid for local pickup orders", op, **ctx)
        if order.pickup_completed:
            raise self._reject(ErrorKind.INVALID_STATE, "Pickup has already been completed for this order", op, **ctx)
        if order.status not in PICKUP_STATUSES:
            raise self._reject(
                ErrorKind.INVALID_STATE, f"Order cannot be completed from current status: {order.status.value}", op, **ctx
            )

        now = self.clock.now()
        if order.has_active_credential(now):
            return PickupCredential(
                order_id=order.id,
                pickup_code=order.pickup_code,
                pickup_token=order.pickup_token,
                expires_at=order.pickup_code_expires_at,
                is_existing=True,
            )

        code, token = self.generator.generate()
        # A regenerated code must differ from the one it replaces.
        while code == order.pickup_code:
            code, token = self.generator.generate()
        expires_at = now + PICKUP_CODE_TTL
        updated = self._write(
            order, actor_id, op,
            expected={"status": order.status, "pickup_completed": False, "pickup_token": order.pickup_token},
            patch={
                "pickup_code": code,
                "pickup_token": token,
                "pickup_code_created_at": now,
                "pickup_code_expires_at": expires_at,
                "seller_pickup_initiated": True,
                "seller_pickup_initiated_at": order.seller_pickup_initiated_at or now,
            },
        )
        self._notify(order.buyer_id, EventKind.ORDER_UPDATE, {
            "order_id": order.id,
            "title": "Your pickup is ready",
            "message": f'The seller is ready to hand over "{order.listing_title or "your item"}".',
            "expires_at": expires_at.isoformat(),
        })
        return PickupCredential(
            order_id=updated.id,
            pickup_code=code,
            pickup_token=token,
            expires_at=expires_at,
            is_existing=False,
        )

    def pickup_qr(self, order_id: str, actor_id: str) -> Tuple[PickupCredential, bytes]:
        cred = self.generate_pickup_credential(order_id, actor_id)
        return cred, render_pickup_qr(cred.order_id, cred.pickup_token)

    def verify_pickup_credential(self, credential: str, actor_id: str) -> OrderSummary:
        """
        Resolve a typed code or scanned token to the order it unlocks.

        Read-only: the buyer confirms the summary and then calls
        complete_pickup, so a retried screen cannot complete an order the
        buyer never saw.
        """
        op = "verify_pickup_credential"
        try:
            cred = extract_credential(credential)
        except OrderError as e:
            raise self._reject(e.kind, e.message, op, actor_id=actor_id) from None

        now = self.clock.now()
        candidates = self.store.find_by_credential(cred)

        def prefer_actor(orders):
            mine = [o for o in orders if o.buyer_id == actor_id]
            return (mine or orders)[0]

        active = [o for o in candidates if matches_active(o, cred)]
        if active:
            order = prefer_actor(active)
            if order.buyer_id != actor_id:
                logger.warning("%s order=%s presented by non-buyer actor=%s", op, order.id, actor_id)
            try:
                self.verifier.check(order, cred, now, actor_id=actor_id)
            except OrderError as e:
                raise self._reject(e.kind, e.message, op, order_id=order.id, actor_id=actor_id, **e.details) from None

            return OrderSummary(
                order_id=order.id,
                listing_title=order.listing_title or "Unknown Item",
                seller_name=self._seller_name(order.seller_id),
                amount_cents=order.amount_cents,
                pickup_token=order.pickup_token if order.buyer_id == actor_id else None,
                expires_at=order.pickup_code_expires_at,
            )

        redeemed = [o for o in candidates if matches_redeemed(o, cred)]
        if redeemed:
            order = prefer_actor(redeemed)
            raise self._reject(
                ErrorKind.ALREADY_COMPLETED, "Pickup has already been completed for this order",
                op, order_id=order.id, actor_id=actor_id,
            )

        what = "pickup code" if is_pickup_code(cred) else "pickup QR code"
        raise self._reject(ErrorKind.CREDENTIAL_NOT_FOUND, f"Invalid or expired {what}", op, actor_id=actor_id)

    def complete_pickup(self, order_id: str, actor_id: str, role: str, credential: str) -> Order:
        op = "complete_pickup"
        ctx = {"order_id": order_id, "actor_id": actor_id}
        try:
            role = PickupRole(role)
        except ValueError:
            raise self._reject(ErrorKind.FORBIDDEN, 'Invalid role. Must be "buyer" or "seller"', op, **ctx) from None

        order = self._load(order_id, actor_id, op)

        if role == PickupRole.SELLER:
            raise self._reject(
                ErrorKind.FORBIDDEN, "Sellers issue the pickup code; only the buyer can complete the pickup", op, **ctx
            )
        if actor_id != order.buyer_id:
            raise self._reject(ErrorKind.FORBIDDEN, "Only the buyer can confirm pickup", op, **ctx)
        if not order.is_pickup:
            raise self._reject(ErrorKind.INVALID_STATE, "This operation is only valid for local pickup orders", op, **ctx)
        if order.pickup_completed or order.status == OrderStatus.COMPLETED:
            raise self._reject(ErrorKind.ALREADY_COMPLETED, "Pickup has already been completed for this order", op, **ctx)
        if order.status not in PICKUP_STATUSES:
            raise self._reject(
                ErrorKind.INVALID_STATE, f"Order cannot be completed from current status: {order.status.value}", op, **ctx
            )
        if not order.is_paid:
            raise self._reject(ErrorKind.INVALID_STATE, "Order must be paid before pickup can be completed", op, **ctx)

        now = self.clock.now()
        try:
            cred = extract_credential(credential)
            self.verifier.check(order, cred, now, actor_id=actor_id)
        except OrderError as e:
            raise self._reject(e.kind, e.message, op, **ctx, **e.details) from None

        updated = self._write(
            order, actor_id, op,
            expected={"status": order.status, "pickup_completed": False, "pickup_token": order.pickup_token},
            patch={
                "status": OrderStatus.COMPLETED,
                "pickup_completed": True,
                "pickup_completed_at": now,
                "completed_at": now,
                "completed_by": actor_id,
                "redeemed_pickup_code": order.pickup_code,
                "redeemed_pickup_token": order.pickup_token,
                **CLEARED_CREDENTIAL,
            },
            to_status=OrderStatus.COMPLETED,
        )
        self._notify_completed(updated, "Pickup completed")
        return updated

    # -------------------
    # Buyer completion
    # -------------------
    def complete_by_buyer(self, order_id: str, actor_id: str) -> Order:
        op = "complete_by_buyer"
        order = self._load(order_id, actor_id, op)
        ctx = {"order_id": order_id, "actor_id": actor_id}

        if actor_id != order.buyer_id:
            raise self._reject(ErrorKind.FORBIDDEN, "Only the buyer can complete this order", op, **ctx)

        now = self.clock.now()
        elig = evaluate(order, now)
        if not elig.eligible:
            raise self._reject(
                ErrorKind(elig.blocked_by), elig.reason, op, **ctx,
                hours_remaining=elig.hours_remaining,
                eligible_at=elig.eligible_at.isoformat(),
            )

        patch: Dict[str, Any] = {
            "status": OrderStatus.COMPLETED,
            "completed_at": now,
            "completed_by": actor_id,
            **CLEARED_CREDENTIAL,
        }
        if order.has_credential():
            # Keep the retired credential so a late scan reports completion.
            patch["redeemed_pickup_code"] = order.pickup_code
            patch["redeemed_pickup_token"] = order.pickup_token

        updated = self._write(
            order, actor_id, op,
            expected={"status": order.status, "pickup_completed": False, "pickup_token": order.pickup_token},
            patch=patch,
            to_status=OrderStatus.COMPLETED,
        )
        self._notify_completed(updated, "Order completed by buyer")
        return updated

    def _notify_completed(self, order: Order, title: str) -> None:
        payload = {"order_id": order.id, "title": title, "listing_title": order.listing_title}
        self._notify(order.seller_id, EventKind.ORDER_UPDATE, payload)
        self._notify(order.buyer_id, EventKind.ORDER_UPDATE, payload)
        if not order.review_submitted:
            self._notify(order.buyer_id, EventKind.REVIEW_PROMPT, {"order_id": order.id, "seller_id": order.seller_id})

    # -------------------
    # Shipping path
    # -------------------
    def confirm_payment(self, order_id: str) -> Order:
        """Hook for the payment gateway once the charge has settled."""
        op = "confirm_payment"
        order = self._load(order_id, None, op)
        if order.status != OrderStatus.PENDING or order.is_paid:
            raise self._reject(
                ErrorKind.INVALID_STATE, f"Order is not awaiting payment (status: {order.status.value})",
                op, order_id=order_id,
            )

        now = self.clock.now()
        updated = self._write(
            order, None, op,
            expected={"status": OrderStatus.PENDING, "payment_status": PaymentStatus.AWAITING_PAYMENT},
            patch={
                "status": OrderStatus.PAID,
                "payment_status": PaymentStatus.PAID,
                "payment_confirmed_at": order.payment_confirmed_at or now,
            },
            to_status=OrderStatus.PAID,
        )
        self._notify(order.seller_id, EventKind.SALE, {
            "order_id": order.id,
            "listing_title": order.listing_title,
            "amount_cents": order.amount_cents,
            "is_pickup": order.is_pickup,
        })
        return updated

    def advance_shipping(self, order_id: str, actor_id: str, next_status: str) -> Order:
        op = "advance_shipping"
        ctx = {"order_id": order_id, "actor_id": actor_id}
        try:
            target = OrderStatus(next_status)
        except ValueError:
            raise self._reject(ErrorKind.INVALID_STATE, f"Unknown status: {next_status}", op, **ctx) from None

        order = self._load(order_id, actor_id, op)

        if order.status == OrderStatus.COMPLETED:
            raise self._reject(ErrorKind.ALREADY_COMPLETED, "Order is already completed", op, **ctx)
        if order.is_terminal:
            raise self._reject(ErrorKind.INVALID_STATE, "Order is cancelled", op, **ctx)

        roles = _SHIPPING_STEPS.get(target)
        if roles is None:
            raise self._reject(ErrorKind.INVALID_STATE, f"{target.value} is not a shipping step", op, **ctx)
        if order.party_of(actor_id) not in roles:
            raise self._reject(ErrorKind.FORBIDDEN, f"You cannot move this order to {target.value}", op, **ctx)
        if target == OrderStatus.COMPLETED and order.status != OrderStatus.SHIPPED:
            raise self._reject(ErrorKind.INVALID_STATE, "Only shipped orders can be confirmed as delivered", op, **ctx)
        if target == OrderStatus.SHIPPED and order.is_pickup:
            raise self._reject(ErrorKind.INVALID_STATE, "Pickup orders are handed over, not shipped", op, **ctx)
        if not order.is_paid:
            raise self._reject(ErrorKind.INVALID_STATE, "Order must be paid before it can progress", op, **ctx)

        now = self.clock.now()
        patch: Dict[str, Any] = {"status": target}
        if target == OrderStatus.COMPLETED:
            patch.update({"completed_at": now, "completed_by": actor_id})

        updated = self._write(order, actor_id, op, expected={"status": order.status}, patch=patch, to_status=target)

        if target == OrderStatus.COMPLETED:
            self._notify_completed(updated, "Delivery confirmed")
        else:
            self._notify(order.buyer_id, EventKind.ORDER_UPDATE, {
                "order_id": order.id,
                "title": "Order shipped" if target == OrderStatus.SHIPPED else "Seller is preparing your order",
                "status": target.value,
            })
        return updated

    def cancel(self, order_id: str, actor_id: str) -> Order:
        op = "cancel"
        order = self._load(order_id, actor_id, op)
        ctx = {"order_id": order_id, "actor_id": actor_id}

        if order.party_of(actor_id) is None and not self._is_admin(actor_id):
            raise self._reject(ErrorKind.FORBIDDEN, "You are not a party to this order", op, **ctx)
        if order.status == OrderStatus.COMPLETED:
            raise self._reject(ErrorKind.ALREADY_COMPLETED, "Completed orders cannot be cancelled", op, **ctx)
        if order.status not in CANCELLABLE_FROM:
            raise self._reject(ErrorKind.INVALID_STATE, "Order is already cancelled", op, **ctx)

        now = self.clock.now()
        updated = self._write(
            order, actor_id, op,
            expected={"status": order.status, "pickup_completed": False},
            patch={
                "status": OrderStatus.CANCELLED,
                "cancelled_at": now,
                "cancelled_by": actor_id,
                **CLEARED_CREDENTIAL,
            },
            to_status=OrderStatus.CANCELLED,
        )
        for uid in {order.buyer_id, order.seller_id} - {actor_id}:
            self._notify(uid, EventKind.ORDER_UPDATE, {"order_id": order.id, "title": "Order cancelled", "status": "cancelled"})
        return updated

    # -------------------
    # Refunds (request/resolve only; money moves elsewhere)
    # -------------------
    def request_refund(self, order_id: str, actor_id: str, reason: str) -> Order:
        op = "request_refund"
        order = self._load(order_id, actor_id, op)
        ctx = {"order_id": order_id, "actor_id": actor_id}
        now = self.clock.now()

        if actor_id != order.buyer_id:
            raise self._reject(ErrorKind.FORBIDDEN, "You can only request refunds for your own orders", op, **ctx)
        reason = (reason or "").strip()
        if not reason:
            raise self._reject(ErrorKind.INVALID_STATE, "A reason is required", op, **ctx)
        if order.status == OrderStatus.CANCELLED:
            raise self._reject(ErrorKind.INVALID_STATE, "Cancelled orders cannot be refunded", op, **ctx)
        if not order.is_paid:
            raise self._reject(ErrorKind.INVALID_STATE, "Order has not been paid", op, **ctx)
        if order.is_pickup and order.pickup_completed:
            raise self._reject(ErrorKind.INVALID_STATE, "Pickup orders cannot be refunded after completion", op, **ctx)
        if now > order.created_at + REFUND_REQUEST_WINDOW:
            raise self._reject(ErrorKind.INVALID_STATE, "Refund deadline has passed (30 days from order date)", op, **ctx)
        if order.refund_status in (RefundStatus.REQUESTED, RefundStatus.PROCESSING):
            raise self._reject(ErrorKind.REFUND_PENDING, "Refund already requested", op, **ctx)
        if order.refund_status != RefundStatus.NONE:
            raise self._reject(ErrorKind.INVALID_STATE, f"Current refund status: {order.refund_status.value}", op, **ctx)

        updated = self._write(
            order, actor_id, op,
            expected={"status": order.status, "refund_status": RefundStatus.NONE},
            patch={
                "refund_status": RefundStatus.REQUESTED,
                "refund_reason": reason,
                "refund_requested_at": now,
            },
        )
        self._notify(order.seller_id, EventKind.REFUND_REQUESTED, {"order_id": order.id, "reason": reason})
        return updated

    def resolve_refund(self, order_id: str, actor_id: str) -> Order:
        op = "resolve_refund"
        order = self._load(order_id, actor_id, op)
        ctx = {"order_id": order_id, "actor_id": actor_id}

        if actor_id != order.seller_id and not self._is_admin(actor_id):
            raise self._reject(ErrorKind.FORBIDDEN, "Not authorized to process this refund", op, **ctx)
        if order.refund_status not in (RefundStatus.REQUESTED, RefundStatus.PROCESSING):
            raise self._reject(ErrorKind.INVALID_STATE, "Refund is not in requested status", op, **ctx)

        updated = self._write(
            order, actor_id, op,
            expected={"refund_status": order.refund_status},
            patch={"refund_status": RefundStatus.RESOLVED},
        )
        self._notify(order.buyer_id, EventKind.REFUND_RESOLVED, {"order_id": order.id})
        return updated


def expires_in_seconds(expires_at: datetime, now: datetime) -> int:
    return max(0, int((expires_at - now).total_seconds()))
