"""Админ: цены пакетов и курс валют."""
import logging
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from esim_app.config import settings
from esim_app.core.cache import cache_service, get_cache_key_packages
from esim_app.core.dependencies import get_current_admin, get_roamwifi_service
from esim_app.database import get_db
from esim_app.models.package_price import PackagePrice
from esim_app.services.pricing_service import PackagePriceNotFoundError, PricingService
from esim_app.services.rate_service import RateService
from esim_app.services.roamwifi_service import RoamWiFiError, RoamWiFiService

logger = logging.getLogger(__name__)

router = APIRouter()


class PackagePriceResponse(BaseModel):
    """Цена пакета для админки."""

    provider_price_id: int
    sku_id: str
    show_name: str | None = None
    days: int | None = None
    raw_provider_price: float
    markup_percent: float | None = None
    override_price_usd: float | None = None
    effective_price_usd: float | None = None
    effective_price_local: float | None = None
    exchange_rate: float | None = None
    price_source: str
    active: bool
    last_synced_at: str | None = None


class MarkupRequest(BaseModel):
    markup_percent: Decimal


class OverrideRequest(BaseModel):
    override_price_usd: Decimal | None = None  # None - снять override


class ExchangeRateRequest(BaseModel):
    rate: Decimal = Field(gt=0)


class PricingInfoResponse(BaseModel):
    """Текущий курс и его источник."""

    from_currency: str
    to_currency: str
    rate: float
    source: str
    last_updated: str | None = None
    markup_min_percent: float
    markup_max_percent: float


def _optional_float(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def build_package_price_response(package_price: PackagePrice) -> PackagePriceResponse:
    return PackagePriceResponse(
        provider_price_id=package_price.provider_price_id,
        sku_id=package_price.sku_id,
        show_name=package_price.show_name,
        days=package_price.days,
        raw_provider_price=float(package_price.raw_provider_price),
        markup_percent=_optional_float(package_price.markup_percent),
        override_price_usd=_optional_float(package_price.override_price_usd),
        effective_price_usd=_optional_float(package_price.effective_price_usd),
        effective_price_local=_optional_float(package_price.effective_price_local),
        exchange_rate=_optional_float(package_price.exchange_rate),
        price_source=package_price.price_source,
        active=package_price.active,
        last_synced_at=package_price.last_synced_at.isoformat() if package_price.last_synced_at else None,
    )


@router.get("/packages", response_model=List[PackagePriceResponse])
async def list_package_prices(
    sku_id: str | None = None,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Цены пакетов, опционально по одному SKU."""
    stmt = select(PackagePrice).order_by(PackagePrice.sku_id, PackagePrice.provider_price_id)
    if sku_id:
        stmt = stmt.where(PackagePrice.sku_id == sku_id)
    if not include_inactive:
        stmt = stmt.where(PackagePrice.active == True)  # noqa: E712
    result = await db.execute(stmt)
    return [build_package_price_response(pp) for pp in result.scalars().all()]


@router.post("/skus/{sku_id}/sync")
async def sync_sku_packages(
    sku_id: str,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
    roamwifi: RoamWiFiService = Depends(get_roamwifi_service),
):
    """Синхронизировать пакеты SKU с RoamWiFi и пересчитать цены."""
    service = PricingService(db, roamwifi=roamwifi)
    try:
        synced = await service.sync_package_prices(sku_id)
    except RoamWiFiError as e:
        logger.error(f"Package sync for SKU {sku_id} failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    await cache_service.delete(get_cache_key_packages(sku_id))
    return {"ok": True, "sku_id": sku_id, "synced": synced}


@router.put("/packages/{provider_price_id}/markup", response_model=PackagePriceResponse)
async def set_package_markup(
    provider_price_id: int,
    request: MarkupRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Установить наценку. Override при этом снимается."""
    service = PricingService(db)
    try:
        package_price = await service.set_markup(provider_price_id, request.markup_percent)
    except PackagePriceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return build_package_price_response(package_price)


@router.put("/packages/{provider_price_id}/override", response_model=PackagePriceResponse)
async def set_package_override(
    provider_price_id: int,
    request: OverrideRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Установить фиксированную цену в USD или снять ее (override_price_usd = null)."""
    service = PricingService(db)
    try:
        package_price = await service.set_override(provider_price_id, request.override_price_usd)
    except PackagePriceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return build_package_price_response(package_price)


@router.get("/pricing", response_model=PricingInfoResponse)
async def get_pricing_info(
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Текущий курс USD -> MNT."""
    quote = await RateService(db).get_quote()
    return PricingInfoResponse(
        from_currency=settings.base_currency,
        to_currency=settings.local_currency,
        rate=float(quote.rate),
        source=quote.source,
        last_updated=quote.last_updated.isoformat() if quote.last_updated else None,
        markup_min_percent=float(settings.markup_min_percent),
        markup_max_percent=float(settings.markup_max_percent),
    )


@router.put("/pricing/exchange-rate", response_model=PricingInfoResponse)
async def set_exchange_rate(
    request: ExchangeRateRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """
    Установить курс вручную.

    Цены пакетов не пересчитываются автоматически, для этого есть /pricing/recalculate.
    """
    record = await RateService(db).set_manual_rate(request.rate)
    logger.info(f"Exchange rate set manually by {admin.get('sub')}: {record.rate}")
    return PricingInfoResponse(
        from_currency=record.from_currency,
        to_currency=record.to_currency,
        rate=float(record.rate),
        source=record.source,
        last_updated=record.last_updated.isoformat(),
        markup_min_percent=float(settings.markup_min_percent),
        markup_max_percent=float(settings.markup_max_percent),
    )


@router.post("/pricing/recalculate")
async def recalculate_prices(
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Пересчитать цены всех активных пакетов по текущему курсу."""
    updated = await PricingService(db).recalculate_all()
    return {"ok": True, "updated": updated, "recalculated_at": datetime.utcnow().isoformat()}
