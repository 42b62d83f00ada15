"""
אימות JWT של נציגים.

הטוקנים מונפקים ע"י שירות ההתחברות (מחוץ לשירות הזה); כאן רק מאמתים
חתימה ותוקף ומחלצים tenant_id / user_id / role.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt as pyjwt
from pydantic import BaseModel

from indexplus.core.config import settings
from indexplus.core.logging import get_logger

logger = get_logger(__name__)


class TokenPayload(BaseModel):
    """תוכן ה-JWT token"""
    tenant_id: str
    user_id: str
    role: str = "agent"
    exp: int


def create_access_token(tenant_id: str, user_id: str, role: str = "agent", minutes: int = 60) -> str:
    """יצירת טוקן — משמש סקריפטים מקומיים ובדיקות"""
    if not settings.JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY לא מוגדר — אי אפשר ליצור טוקן")
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {
        "tenant_id": tenant_id,
        "user_id": user_id,
        "role": role,
        "exp": int(expire.timestamp()),
    }
    return pyjwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str) -> Optional[TokenPayload]:
    """אימות JWT token — מחזיר None אם לא תקין או פג תוקף"""
    if not settings.JWT_SECRET_KEY:
        logger.error("JWT_SECRET_KEY ריק — טוקנים לא יאומתו")
        return None
    try:
        payload = pyjwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return TokenPayload(**payload)
    except pyjwt.InvalidTokenError:
        logger.warning("JWT token invalid or expired")
        return None
    except (KeyError, ValueError, TypeError) as e:
        logger.warning("JWT payload malformed", extra_data={"error": str(e)})
        return None
