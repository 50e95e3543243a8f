# cardmarket/notifications.py
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Protocol

from sqlalchemy.orm import Session, sessionmaker

from .models import Notification
from .orders.domain import EventKind

logger = logging.getLogger(__name__)

TITLES: Dict[EventKind, str] = {
    EventKind.SALE: "New sale",
    EventKind.ORDER_UPDATE: "Order updated",
    EventKind.REVIEW_PROMPT: "How did it go? Leave a review",
    EventKind.REFUND_REQUESTED: "Refund requested",
    EventKind.REFUND_RESOLVED: "Refund request resolved",
}


class NotificationDispatcher(Protocol):
    def notify(self, user_id: str, kind: EventKind, payload: Dict[str, Any]) -> None: ...


class NullNotificationDispatcher:
    def notify(self, user_id: str, kind: EventKind, payload: Dict[str, Any]) -> None:
        return None


class LoggingNotificationDispatcher:
    def notify(self, user_id: str, kind: EventKind, payload: Dict[str, Any]) -> None:
        logger.info("notify user=%s kind=%s payload=%s", user_id, kind.value, payload)


class SqlNotificationDispatcher:
    """In-app notifications, one row per event."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def notify(self, user_id: str, kind: EventKind, payload: Dict[str, Any]) -> None:
        with self._session_factory() as session:
            session.add(
                Notification(
                    user_id=user_id,
                    kind=kind.value,
                    title=str(payload.get("title") or TITLES.get(kind, kind.value)),
                    payload_json=json.dumps(payload, ensure_ascii=False, default=str),
                    read=False,
                    created_at=datetime.now(timezone.utc),
                )
            )
            session.commit()
        logger.debug("notification stored user=%s kind=%s", user_id, kind.value)
