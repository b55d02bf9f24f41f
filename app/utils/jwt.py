# app/utils/jwt.py
from datetime import timedelta
from typing import Optional

from jose import jwt, JWTError

from app.core.config import settings
from app.utils.timezone import utcnow


def create_access_token(user_id: int, email: Optional[str] = None,
                        expires_delta: Optional[timedelta] = None) -> str:
    """
    Issued by the identity provider; kept here for tooling and tests.
    """
    now = utcnow()
    payload = {
        "sub": str(user_id),  # caller id
        "iat": now,
        "exp": now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)),
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_token(raw_token: str) -> Optional[dict]:
    try:
        return jwt.decode(raw_token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError:
        return None
