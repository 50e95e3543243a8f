# cardmarket/auth.py
"""
Bearer identity.

Accounts live elsewhere; this service only trusts the `sub` claim of a
signed JWT. Signing settings are read from the environment on every call
so tests can swap them with monkeypatch.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException
from jose import JWTError, jwt

DEFAULT_TTL_MINUTES = 24 * 60


@dataclass(frozen=True)
class JwtConfig:
    secret: str
    algorithm: str
    ttl: timedelta

    @classmethod
    def from_env(cls) -> "JwtConfig":
        raw_ttl = os.getenv("JWT_EXPIRE_MIN", "")
        minutes = int(raw_ttl) if raw_ttl.strip().isdigit() else DEFAULT_TTL_MINUTES
        return cls(
            secret=os.getenv("JWT_SECRET", "dev-secret-change-me"),
            algorithm=os.getenv("JWT_ALG", "HS256"),
            ttl=timedelta(minutes=minutes),
        )


def create_token(user_id: str, config: Optional[JwtConfig] = None) -> str:
    cfg = config or JwtConfig.from_env()
    issued = datetime.now(timezone.utc)
    claims = {"sub": user_id, "iat": issued, "exp": issued + cfg.ttl}
    return jwt.encode(claims, cfg.secret, algorithm=cfg.algorithm)


def decode_token(token: str, config: Optional[JwtConfig] = None) -> Optional[str]:
    """Subject of a valid token, or None for anything expired, forged or malformed."""
    cfg = config or JwtConfig.from_env()
    try:
        claims = jwt.decode(token, cfg.secret, algorithms=[cfg.algorithm])
    except JWTError:
        return None
    return claims.get("sub") or None


def require_user_id(authorization: Optional[str] = Header(default=None)) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing Bearer token")

    user_id = decode_token(token.strip())
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id
