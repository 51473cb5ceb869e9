"""Админ API."""
from fastapi import APIRouter

from esim_app.api.v1.admin import orders, pricing

router = APIRouter()
router.include_router(pricing.router)
router.include_router(orders.router)
