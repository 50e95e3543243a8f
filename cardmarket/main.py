# cardmarket/main.py
from __future__ import annotations

import logging
from typing import Any, Dict, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from .auth import require_user_id
from .config import Settings, configure_logging
from .db import init_db, make_engine, make_session_factory
from .notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NullNotificationDispatcher,
    SqlNotificationDispatcher,
)
from .orders import (
    Eligibility,
    ErrorKind,
    OrderError,
    OrderLifecycle,
    PickupCredential,
    SqlOrderStore,
)
from .orders.credentials import pickup_qr_payload
from .orders.lifecycle import expires_in_seconds
from .users import SqlUserDirectory

logger = logging.getLogger(__name__)

STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CREDENTIAL_NOT_FOUND: 404,
    ErrorKind.CREDENTIAL_EXPIRED: 410,
    ErrorKind.CREDENTIAL_INVALID: 400,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.ALREADY_COMPLETED: 409,
    ErrorKind.NOT_ELIGIBLE: 409,
    ErrorKind.DISPUTE_ACTIVE: 409,
    ErrorKind.REFUND_PENDING: 409,
    ErrorKind.CONFLICT: 409,
}


# -------------------
# Schemas
# -------------------
class VerifyIn(BaseModel):
    credential: str


class CompletePickupIn(BaseModel):
    role: Literal["buyer", "seller"]
    credential: str = ""


class ShippingIn(BaseModel):
    next_status: str


class RefundIn(BaseModel):
    reason: str


# -------------------
# Wiring
# -------------------
def build_notifier(settings: Settings, session_factory) -> NotificationDispatcher:
    if not settings.notifications_enabled:
        return NullNotificationDispatcher()
    if settings.notification_backend == "log":
        return LoggingNotificationDispatcher()
    if settings.notification_backend != "sql":
        raise ValueError(f"Unknown NOTIFICATION_BACKEND: {settings.notification_backend}")
    return SqlNotificationDispatcher(session_factory)


def build_lifecycle(settings: Settings) -> OrderLifecycle:
    engine = make_engine(settings.database_url)
    init_db(engine)
    factory = make_session_factory(engine)

    return OrderLifecycle(
        store=SqlOrderStore(factory),
        notifier=build_notifier(settings, factory),
        users=SqlUserDirectory(factory),
        admin_ids=settings.admin_user_ids,
    )


def get_lifecycle(request: Request) -> OrderLifecycle:
    return request.app.state.lifecycle


def _credential_out(cred: PickupCredential, lifecycle: OrderLifecycle) -> Dict[str, Any]:
    return {
        "order_id": cred.order_id,
        "pickup_code": cred.pickup_code,
        "pickup_token": cred.pickup_token,
        "qr_payload": pickup_qr_payload(cred.order_id, cred.pickup_token),
        "expires_at": cred.expires_at.isoformat(),
        "expires_in_seconds": expires_in_seconds(cred.expires_at, lifecycle.clock.now()),
        "is_existing": cred.is_existing,
    }


def _eligibility_out(e: Eligibility) -> Dict[str, Any]:
    return {
        "eligible": e.eligible,
        "eligible_at": e.eligible_at.isoformat(),
        "hours_remaining": e.hours_remaining,
        "blocked_by": e.blocked_by,
        "reason": e.reason,
    }


def create_app(settings: Optional[Settings] = None, lifecycle: Optional[OrderLifecycle] = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.settings = settings
    app.state.lifecycle = lifecycle or build_lifecycle(settings)

    @app.exception_handler(OrderError)
    async def order_error_handler(request: Request, exc: OrderError) -> JSONResponse:
        return JSONResponse(status_code=STATUS_BY_KIND.get(exc.kind, 400), content=exc.to_dict())

    # -------------------
    # Health
    # -------------------
    @app.get("/")
    def root():
        return {"ok": True, "service": "cardmarket-orders"}

    # -------------------
    # Orders
    # -------------------
    @app.get("/orders/{order_id}")
    def get_order(order_id: str, user_id: str = Depends(require_user_id), lc: OrderLifecycle = Depends(get_lifecycle)):
        return lc.get_order(order_id, user_id).public_view()

    @app.post("/orders/{order_id}/payment/confirm")
    def confirm_payment(order_id: str, user_id: str = Depends(require_user_id), lc: OrderLifecycle = Depends(get_lifecycle)):
        if user_id not in lc.admin_ids:
            raise HTTPException(status_code=403, detail="Only the payment service can confirm payments")
        return lc.confirm_payment(order_id).public_view()

    @app.post("/orders/{order_id}/shipping")
    def advance_shipping(
        order_id: str,
        payload: ShippingIn,
        user_id: str = Depends(require_user_id),
        lc: OrderLifecycle = Depends(get_lifecycle),
    ):
        return lc.advance_shipping(order_id, user_id, payload.next_status).public_view()

    @app.post("/orders/{order_id}/cancel")
    def cancel(order_id: str, user_id: str = Depends(require_user_id), lc: OrderLifecycle = Depends(get_lifecycle)):
        return lc.cancel(order_id, user_id).public_view()

    # -------------------
    # Local pickup
    # -------------------
    @app.post("/orders/{order_id}/pickup/code")
    def generate_pickup_code(order_id: str, user_id: str = Depends(require_user_id), lc: OrderLifecycle = Depends(get_lifecycle)):
        cred = lc.generate_pickup_credential(order_id, user_id)
        return {"ok": True, **_credential_out(cred, lc)}

    @app.get("/orders/{order_id}/pickup/qr")
    def pickup_qr(order_id: str, user_id: str = Depends(require_user_id), lc: OrderLifecycle = Depends(get_lifecycle)):
        cred, png = lc.pickup_qr(order_id, user_id)
        return Response(
            content=png,
            media_type="image/png",
            headers={"Cache-Control": "no-store", "X-Pickup-Expires-At": cred.expires_at.isoformat()},
        )

    @app.post("/pickup/verify")
    def verify_pickup(payload: VerifyIn, user_id: str = Depends(require_user_id), lc: OrderLifecycle = Depends(get_lifecycle)):
        s = lc.verify_pickup_credential(payload.credential, user_id)
        return {
            "ok": True,
            "order_details": {
                "order_id": s.order_id,
                "listing_title": s.listing_title,
                "seller_name": s.seller_name,
                "amount_cents": s.amount_cents,
                "pickup_token": s.pickup_token,
                "expires_at": s.expires_at.isoformat(),
            },
        }

    @app.post("/orders/{order_id}/pickup/complete")
    def complete_pickup(
        order_id: str,
        payload: CompletePickupIn,
        user_id: str = Depends(require_user_id),
        lc: OrderLifecycle = Depends(get_lifecycle),
    ):
        order = lc.complete_pickup(order_id, user_id, payload.role, payload.credential)
        return {"ok": True, "order_completed": True, "order": order.public_view()}

    # -------------------
    # Buyer completion
    # -------------------
    @app.get("/orders/{order_id}/auto-completion")
    def auto_completion(order_id: str, user_id: str = Depends(require_user_id), lc: OrderLifecycle = Depends(get_lifecycle)):
        return _eligibility_out(lc.auto_completion_status(order_id, user_id))

    @app.post("/orders/{order_id}/complete")
    def complete_by_buyer(order_id: str, user_id: str = Depends(require_user_id), lc: OrderLifecycle = Depends(get_lifecycle)):
        order = lc.complete_by_buyer(order_id, user_id)
        return {"ok": True, "completed_at": order.completed_at.isoformat(), "order": order.public_view()}

    # -------------------
    # Refunds
    # -------------------
    @app.post("/orders/{order_id}/refund")
    def request_refund(
        order_id: str,
        payload: RefundIn,
        user_id: str = Depends(require_user_id),
        lc: OrderLifecycle = Depends(get_lifecycle),
    ):
        return lc.request_refund(order_id, user_id, payload.reason).public_view()

    @app.post("/orders/{order_id}/refund/resolve")
    def resolve_refund(order_id: str, user_id: str = Depends(require_user_id), lc: OrderLifecycle = Depends(get_lifecycle)):
        return lc.resolve_refund(order_id, user_id).public_view()

    logger.info("app ready db=%s", settings.database_url)
    return app
