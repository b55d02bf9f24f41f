# app/api/deps.py
from __future__ import annotations

from typing import Generator, Optional

from fastapi import Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.db.session import SessionLocal
from app.utils.jwt import decode_token


class CurrentUser(BaseModel):
    """Caller identity as asserted by the identity provider's token."""
    id: int
    email: Optional[str] = None


# =========================================================
# DB (per request)
# =========================================================
def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =========================================================
# AUTH HELPERS
# =========================================================
def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def current_user(authorization: Optional[str] = Header(None)) -> CurrentUser:
    raw = _extract_bearer(authorization)
    if not raw:
        raise HTTPException(status_code=401, detail="No authorization token provided")

    payload = decode_token(raw)
    if payload is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    sub = payload.get("sub")
    try:
        user_id = int(sub)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token payload")

    return CurrentUser(id=user_id, email=payload.get("email"))
