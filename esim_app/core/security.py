"""Bearer-токены (JWT) для администраторов и покупателей."""
from datetime import datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from esim_app.config import settings

ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL = timedelta(hours=24)


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """
    Создание JWT токена.

    В data ожидаются sub (id покупателя или имя администратора) и role.
    """
    to_encode = data.copy()
    to_encode["exp"] = datetime.utcnow() + (expires_delta or DEFAULT_TOKEN_TTL)
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Payload токена или None, если подпись неверна или срок истек."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
