# cardmarket/orders/credentials.py
"""
Pickup credentials.

The seller issues a 6-digit display code together with an opaque token.
The buyer either types the code or scans a QR carrying the token; both
resolve to the same order and expire together 30 minutes after issue.
"""
from __future__ import annotations

import hmac
import io
import json
import re
import secrets
from datetime import datetime
from typing import Optional, Tuple

import qrcode

from .domain import Order
from .errors import ErrorKind, OrderError

_CODE_RE = re.compile(r"^\d{6}$")

QR_PAYLOAD_TYPE = "pickup_confirmation"


def is_pickup_code(value: str) -> bool:
    return bool(_CODE_RE.match(value or ""))


class CredentialGenerator:
    """Draws codes and tokens from the OS CSPRNG."""

    def __init__(self, token_bytes: int = 32) -> None:
        self._token_bytes = token_bytes

    def generate(self) -> Tuple[str, str]:
        code = str(100000 + secrets.randbelow(900000))
        token = secrets.token_urlsafe(self._token_bytes)
        return code, token


# ----------------------------
# QR payload
# ----------------------------
def pickup_qr_payload(order_id: str, token: str) -> str:
    return json.dumps(
        {"type": QR_PAYLOAD_TYPE, "orderId": order_id, "token": token},
        separators=(",", ":"),
    )


def render_pickup_qr(order_id: str, token: str) -> bytes:
    img = qrcode.make(pickup_qr_payload(order_id, token))
    buf = io.BytesIO()
    img.save(buf)
    return buf.getvalue()


def extract_credential(raw: str) -> str:
    """
    Normalize whatever the buyer presented into a code or token.

    A scanned QR arrives as the JSON payload from pickup_qr_payload;
    anything else is taken as typed text.
    """
    s = (raw or "").strip()
    if not s:
        raise OrderError(ErrorKind.CREDENTIAL_INVALID, "Pickup code is required")

    if not s.startswith("{"):
        return s

    try:
        data = json.loads(s)
    except json.JSONDecodeError:
        raise OrderError(ErrorKind.CREDENTIAL_INVALID, "Invalid QR code format") from None

    if not isinstance(data, dict) or data.get("type") != QR_PAYLOAD_TYPE:
        raise OrderError(ErrorKind.CREDENTIAL_INVALID, "This QR code is not for pickup confirmation")

    token = str(data.get("token") or "").strip()
    if not token:
        raise OrderError(ErrorKind.CREDENTIAL_INVALID, "Invalid QR code: missing token")
    return token


# ----------------------------
# Verification
# ----------------------------
def _same(a: Optional[str], b: str) -> bool:
    if not a:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


def matches_active(order: Order, credential: str) -> bool:
    return _same(order.pickup_code, credential) or _same(order.pickup_token, credential)


def matches_redeemed(order: Order, credential: str) -> bool:
    return _same(order.redeemed_pickup_code, credential) or _same(order.redeemed_pickup_token, credential)


class PickupVerifier:
    """Checks a presented credential against the one bound to an order."""

    def check(self, order: Order, credential: str, now: datetime, *, actor_id: Optional[str] = None) -> None:
        ctx = {"order_id": order.id, "actor_id": actor_id, "transition": "verify_pickup"}

        if order.pickup_completed or matches_redeemed(order, credential):
            raise OrderError(ErrorKind.ALREADY_COMPLETED, "Pickup has already been completed for this order", **ctx)

        if not order.has_credential():
            raise OrderError(ErrorKind.CREDENTIAL_INVALID, "No active pickup code for this order", **ctx)

        if not matches_active(order, credential):
            raise OrderError(ErrorKind.CREDENTIAL_INVALID, "Invalid pickup code", **ctx)

        if now > order.pickup_code_expires_at:
            raise OrderError(
                ErrorKind.CREDENTIAL_EXPIRED,
                "Pickup code has expired. Please ask the seller to generate a new one.",
                details={"expired_at": order.pickup_code_expires_at.isoformat()},
                **ctx,
            )
