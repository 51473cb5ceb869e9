"""Админ: просмотр заказов."""
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from esim_app.api.v1.orders import OrderListResponse, OrderResponse, build_order_response
from esim_app.core.dependencies import get_current_admin
from esim_app.database import get_db
from esim_app.services.order_service import OrderNotFoundError, OrderService

router = APIRouter()


@router.get("/orders", response_model=OrderListResponse)
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    order_status: str | None = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """
    Список всех заказов, новые первыми.

    ?status=failed показывает заказы, которые требуют ручного разбора.
    """
    service = OrderService(db)
    orders, total = await service.list_orders(page=page, limit=limit, status=order_status)

    result = []
    for order in orders:
        transaction = await service.get_current_transaction(order)
        result.append(build_order_response(order, transaction))

    return OrderListResponse(orders=result, total=total, page=page, limit=limit)


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Получить заказ по ID."""
    service = OrderService(db)
    try:
        order = await service.get_by_id(order_id)
    except OrderNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        )

    transaction = await service.get_current_transaction(order)
    return build_order_response(order, transaction)
