"""Catalog API: SKU и пакеты RoamWiFi."""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from esim_app.core.cache import cache_service, get_cache_key_packages, get_cache_key_skus
from esim_app.core.dependencies import get_roamwifi_service
from esim_app.services.roamwifi_service import RoamWiFiError, RoamWiFiService

logger = logging.getLogger(__name__)

router = APIRouter()


class SKUResponse(BaseModel):
    """SKU партнера."""

    sku_id: str
    display: str
    country_code: str


class PackageResponse(BaseModel):
    """Пакет SKU по данным партнера."""

    price_id: int
    api_code: str
    show_name: str
    data_limit: str
    days: int
    price_usd: float | None = None
    premark: str = ""


class SKUPackagesResponse(BaseModel):
    sku_id: str
    display: str
    support_country: List[str] = []
    packages: List[PackageResponse] = []


@router.get("/skus", response_model=List[SKUResponse])
async def get_skus(
    roamwifi: RoamWiFiService = Depends(get_roamwifi_service),
):
    """Список SKU. Кэшируется в Redis."""

    async def load():
        skus = await roamwifi.list_skus()
        return [
            SKUResponse(sku_id=sku.sku_id, display=sku.display, country_code=sku.country_code).model_dump()
            for sku in skus
        ]

    try:
        items = await cache_service.get_or_load(get_cache_key_skus(), load)
    except RoamWiFiError as e:
        logger.error(f"Failed to load RoamWiFi SKUs: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return [SKUResponse(**item) for item in items]


@router.get("/skus/{sku_id}/packages", response_model=SKUPackagesResponse)
async def get_sku_packages(
    sku_id: str,
    roamwifi: RoamWiFiService = Depends(get_roamwifi_service),
):
    """
    Пакеты SKU с ценами партнера в USD.

    Это сырые цены RoamWiFi; итоговые цены магазина живут в package_prices.
    """

    async def load():
        detailed = await roamwifi.get_packages(sku_id)
        return SKUPackagesResponse(
            sku_id=detailed.sku_id,
            display=detailed.display,
            support_country=detailed.support_country,
            packages=[
                PackageResponse(
                    price_id=pkg.price_id,
                    api_code=pkg.api_code,
                    show_name=pkg.show_name,
                    data_limit=pkg.data_limit,
                    days=pkg.days,
                    price_usd=float(pkg.price) if pkg.price is not None else None,
                    premark=pkg.premark,
                )
                for pkg in detailed.packages
            ],
        ).model_dump()

    try:
        data = await cache_service.get_or_load(get_cache_key_packages(sku_id), load)
    except RoamWiFiError as e:
        logger.error(f"Failed to load RoamWiFi packages for SKU {sku_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return SKUPackagesResponse(**data)
