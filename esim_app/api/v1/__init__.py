"""API v1 роутеры."""
from fastapi import APIRouter

from esim_app.api.v1 import admin, catalog, orders, payments

router = APIRouter()

# Подключаем все роутеры
router.include_router(admin.router, prefix="/admin", tags=["admin"])
router.include_router(catalog.router, prefix="/catalog", tags=["catalog"])
router.include_router(orders.router, prefix="/orders", tags=["orders"])
router.include_router(payments.router, prefix="/payments", tags=["payments"])
