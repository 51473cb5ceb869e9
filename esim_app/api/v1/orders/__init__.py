"""Orders API."""
import logging
import uuid
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from esim_app.core.dependencies import get_optional_user, get_qpay_service, get_roamwifi_service, user_id_from
from esim_app.database import get_db
from esim_app.models.order import Order, OrderStatus
from esim_app.models.payment import PaymentTransaction
from esim_app.services.order_service import (
    InvoiceCreationError,
    OrderNotFoundError,
    OrderService,
    OrderStateError,
)
from esim_app.services.qpay_service import QPayError, QPayService
from esim_app.services.roamwifi_service import RoamWiFiService

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateOrderRequest(BaseModel):
    """Запрос на создание заказа."""

    product_id: uuid.UUID
    package_price_id: uuid.UUID | None = None
    provider_price_id: int | None = None  # Можно выбрать пакет по id провайдера
    customer_email: str
    customer_phone: str | None = None
    custom_price_usd: Decimal | None = None  # Только для администратора


class CheckoutResponse(BaseModel):
    """Ответ на создание заказа / перевыставление счета."""

    order_number: str
    status: str
    amount: float
    currency: str
    invoice_id: str
    payment_url: str | None = None
    app_url: str | None = None
    qr_code: str | None = None


class OrderResponse(BaseModel):
    """Ответ с информацией о заказе."""

    id: uuid.UUID
    order_number: str
    status: str
    amount: float
    currency: str
    customer_email: str
    customer_phone: str | None
    product_id: uuid.UUID
    provider_price_id: int | None
    payment_url: str | None = None
    qr_code: str | None = None
    esim: dict | None = None
    failure_reason: str | None = None
    created_at: str
    updated_at: str


class OrderListResponse(BaseModel):
    """Страница заказов."""

    orders: List[OrderResponse]
    total: int
    page: int
    limit: int


def can_view_esim(order: Order, user: dict | None) -> bool:
    """Данные eSIM видит владелец заказа или админ. Гостевой заказ - по номеру."""
    if order.user_id is None:
        return True
    if user and user.get("role") == "admin":
        return True
    return user_id_from(user) == order.user_id


def build_order_response(
    order: Order,
    transaction: PaymentTransaction | None,
    include_esim: bool = True,
) -> OrderResponse:
    payment = (transaction.raw_payload or {}) if transaction else {}
    return OrderResponse(
        id=order.id,
        order_number=order.order_number,
        status=order.status,
        amount=float(order.amount),
        currency=order.currency,
        customer_email=order.customer_email,
        customer_phone=order.customer_phone,
        product_id=order.product_id,
        provider_price_id=order.provider_price_id,
        payment_url=payment.get("web_url"),
        qr_code=payment.get("qr_code"),
        esim=order.esim_data if include_esim and order.status == OrderStatus.COMPLETED else None,
        failure_reason=order.failure_reason,
        created_at=order.created_at.isoformat(),
        updated_at=order.updated_at.isoformat(),
    )


@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    request: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
    user: dict | None = Depends(get_optional_user),
    qpay: QPayService = Depends(get_qpay_service),
    roamwifi: RoamWiFiService = Depends(get_roamwifi_service),
):
    """
    Создать заказ.

    Цена пересчитывается на backend из пакета в БД, клиенту не доверяем.
    """
    if request.custom_price_usd is not None and (not user or user.get("role") != "admin"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="custom_price_usd is allowed for administrators only",
        )

    service = OrderService(db, qpay=qpay, roamwifi=roamwifi)
    try:
        result = await service.create_order(
            product_id=request.product_id,
            customer_email=request.customer_email,
            customer_phone=request.customer_phone,
            package_price_id=request.package_price_id,
            provider_price_id=request.provider_price_id,
            user_id=user_id_from(user),
            custom_price_usd=request.custom_price_usd,
        )
    except InvoiceCreationError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": str(e), "order_number": e.order_number},
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    order, invoice = result.order, result.invoice
    return CheckoutResponse(
        order_number=order.order_number,
        status=order.status,
        amount=float(order.amount),
        currency=order.currency,
        invoice_id=invoice.invoice_id,
        payment_url=invoice.web_url or None,
        app_url=invoice.app_url or None,
        qr_code=invoice.qr_code or None,
    )


@router.get("", response_model=OrderListResponse)
async def get_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    user: dict | None = Depends(get_optional_user),
):
    """История заказов текущего пользователя."""
    user_id = user_id_from(user)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User token required",
        )

    service = OrderService(db)
    orders, total = await service.list_user_orders(user_id, page=page, limit=limit)

    result = []
    for order in orders:
        transaction = await service.get_current_transaction(order)
        result.append(build_order_response(order, transaction))

    return OrderListResponse(orders=result, total=total, page=page, limit=limit)


@router.get("/{order_number}", response_model=OrderResponse)
async def get_order(
    order_number: str,
    db: AsyncSession = Depends(get_db),
    user: dict | None = Depends(get_optional_user),
):
    """
    Получить заказ по номеру. Всегда последнее сохраненное состояние.

    Данные eSIM заказа пользователя отдаются только владельцу или админу.
    """
    service = OrderService(db)
    try:
        order = await service.get_order(order_number)
    except OrderNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        )

    transaction = await service.get_current_transaction(order)
    return build_order_response(order, transaction, include_esim=can_view_esim(order, user))


@router.post("/{order_number}/payment", response_model=CheckoutResponse)
async def initiate_payment(
    order_number: str,
    db: AsyncSession = Depends(get_db),
    qpay: QPayService = Depends(get_qpay_service),
    roamwifi: RoamWiFiService = Depends(get_roamwifi_service),
):
    """Перевыставить счет для неоплаченного заказа."""
    service = OrderService(db, qpay=qpay, roamwifi=roamwifi)
    try:
        result = await service.initiate_payment(order_number)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except OrderStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except QPayError as e:
        logger.error(f"Failed to re-issue invoice for order {order_number}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    order, invoice = result.order, result.invoice
    return CheckoutResponse(
        order_number=order.order_number,
        status=order.status,
        amount=float(order.amount),
        currency=order.currency,
        invoice_id=invoice.invoice_id,
        payment_url=invoice.web_url or None,
        app_url=invoice.app_url or None,
        qr_code=invoice.qr_code or None,
    )
