# cardmarket/users.py
from __future__ import annotations

from typing import Optional, Protocol

from sqlalchemy.orm import Session, sessionmaker

from .models import User


class UserDirectory(Protocol):
    def display_name(self, user_id: str) -> Optional[str]: ...


class SqlUserDirectory:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def display_name(self, user_id: str) -> Optional[str]:
        with self._session_factory() as session:
            u = session.get(User, user_id)
            if not u:
                return None
            return u.display_name or u.username or None
