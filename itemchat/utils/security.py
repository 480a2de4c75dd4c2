from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from itemchat.core.config import get_settings
from itemchat.core.exceptions import Unauthenticated


def create_access_token(subject: str, expires_in: Optional[timedelta] = None) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (expires_in or timedelta(hours=1))
    payload = {"sub": subject, "exp": int(expire.timestamp())}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise Unauthenticated("Invalid or expired token") from exc
    if not payload.get("sub"):
        raise Unauthenticated("Token carries no subject")
    return payload
