"""Dependencies для FastAPI."""
import uuid

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from esim_app.core.security import decode_access_token
from esim_app.services.qpay_service import QPayService
from esim_app.services.roamwifi_service import RoamWiFiService

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


async def get_current_admin(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Dependency для проверки авторизации администратора.

    Проверяет JWT токен и возвращает его payload.
    """
    payload = decode_access_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )

    if payload.get("role") != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )

    return payload


async def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(optional_security),
) -> dict | None:
    """Payload токена, если он передан. Без токена - гостевой заказ."""
    if credentials is None:
        return None

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )
    return payload


def user_id_from(payload: dict | None) -> uuid.UUID | None:
    """ID пользователя из payload токена (поле sub)."""
    if not payload or not payload.get("sub"):
        return None
    try:
        return uuid.UUID(str(payload["sub"]))
    except ValueError:
        return None


def get_qpay_service() -> QPayService:
    """Адаптер QPay для роутов (подменяется в тестах)."""
    return QPayService()


def get_roamwifi_service() -> RoamWiFiService:
    """Адаптер RoamWiFi для роутов (подменяется в тестах)."""
    return RoamWiFiService()
