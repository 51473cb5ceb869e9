"""Сервис ценообразования пакетов."""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession

from esim_app.config import settings
from esim_app.models.package_price import PackagePrice
from esim_app.services.rate_service import RateService
from esim_app.services.roamwifi_service import RoamWiFiService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class PricingError(ValueError):
    """Некорректная наценка/override или невозможно оценить заказ."""


class PackagePriceNotFoundError(LookupError):
    """Пакет с таким provider_price_id не найден."""


@dataclass(frozen=True)
class EffectivePrice:
    """Итоговая цена пакета."""

    usd: Decimal
    local: Decimal | None
    rate: Decimal | None
    source: str  # base / markup / override


def resolve_effective_price(
    raw_price: Decimal,
    markup_percent: Decimal | None,
    override_price_usd: Decimal | None,
    rate: Decimal | None,
) -> EffectivePrice:
    """
    Приоритет: override > markup > base.

    Если курса нет, local остается None - такой цене нельзя доверять при создании заказа.
    """
    if override_price_usd is not None and override_price_usd > 0:
        usd = Decimal(override_price_usd)
        source = "override"
    elif markup_percent is not None:
        usd = Decimal(raw_price) * (1 + Decimal(markup_percent) / 100)
        source = "markup"
    else:
        usd = Decimal(raw_price)
        source = "base"

    usd = usd.quantize(CENT, rounding=ROUND_HALF_UP)
    local = None
    if rate is not None and rate > 0:
        local = (usd * Decimal(rate)).quantize(CENT, rounding=ROUND_HALF_UP)
    else:
        rate = None
    return EffectivePrice(usd=usd, local=local, rate=rate, source=source)


def resolve_package_price(package_price: PackagePrice, rate: Decimal | None) -> EffectivePrice:
    """Итоговая цена для записи PackagePrice."""
    return resolve_effective_price(
        package_price.raw_provider_price,
        package_price.markup_percent,
        package_price.override_price_usd,
        rate,
    )


def apply_effective_price(package_price: PackagePrice, rate: Decimal | None) -> EffectivePrice:
    """Пересчитать и записать вычисляемые поля пакета."""
    price = resolve_package_price(package_price, rate)
    package_price.effective_price_usd = price.usd
    package_price.effective_price_local = price.local
    package_price.exchange_rate = price.rate
    package_price.price_source = price.source
    return price


class PricingService:
    """Наценки, override и синхронизация цен пакетов с RoamWiFi."""

    def __init__(
        self,
        db: AsyncSession,
        rate_service: RateService | None = None,
        roamwifi: RoamWiFiService | None = None,
    ):
        self.db = db
        self.rates = rate_service or RateService(db)
        self.roamwifi = roamwifi or RoamWiFiService()

    async def get_by_provider_price_id(self, provider_price_id: int) -> PackagePrice:
        stmt = select(PackagePrice).where(PackagePrice.provider_price_id == provider_price_id)
        result = await self.db.execute(stmt)
        package_price = result.scalar_one_or_none()
        if not package_price:
            raise PackagePriceNotFoundError(f"Package price {provider_price_id} not found")
        return package_price

    async def set_markup(self, provider_price_id: int, markup_percent: Decimal) -> PackagePrice:
        """Установить наценку в процентах. Override сбрасывается."""
        markup_percent = Decimal(markup_percent)
        if not settings.markup_min_percent <= markup_percent <= settings.markup_max_percent:
            raise PricingError(
                f"markup_percent must be between {settings.markup_min_percent} and {settings.markup_max_percent}"
            )

        package_price = await self.get_by_provider_price_id(provider_price_id)
        package_price.markup_percent = markup_percent
        package_price.override_price_usd = None
        price = apply_effective_price(package_price, await self.rates.get_rate())

        await self.db.commit()
        await self.db.refresh(package_price)
        logger.info(f"Markup {markup_percent}% set for package {provider_price_id}: effective {price.usd} USD")
        return package_price

    async def set_override(self, provider_price_id: int, override_price_usd: Decimal | None) -> PackagePrice:
        """Установить или снять фиксированную цену в USD. Наценка сбрасывается при установке."""
        if override_price_usd is not None and Decimal(override_price_usd) <= 0:
            raise PricingError("override_price_usd must be greater than 0")

        package_price = await self.get_by_provider_price_id(provider_price_id)
        if override_price_usd is None:
            package_price.override_price_usd = None
        else:
            package_price.override_price_usd = Decimal(override_price_usd)
            package_price.markup_percent = None
        price = apply_effective_price(package_price, await self.rates.get_rate())

        await self.db.commit()
        await self.db.refresh(package_price)
        logger.info(
            f"Override {override_price_usd} USD set for package {provider_price_id}: "
            f"effective {price.usd} USD ({price.source})"
        )
        return package_price

    async def recalculate_all(self) -> int:
        """Пересчитать цены всех активных пакетов по текущему курсу."""
        rate = await self.rates.get_rate()
        stmt = select(PackagePrice).where(PackagePrice.active == True)  # noqa: E712
        result = await self.db.execute(stmt)
        packages = result.scalars().all()

        for package_price in packages:
            apply_effective_price(package_price, rate)

        await self.db.commit()
        logger.info(f"Recalculated {len(packages)} package prices with rate {rate}")
        return len(packages)

    async def sync_package_prices(self, sku_id: str) -> int:
        """
        Загрузить пакеты SKU от RoamWiFi и обновить цены.

        Новые пакеты создаются, существующие обновляются с сохранением наценки/override,
        отсутствующие у партнера деактивируются.

        Returns:
            Количество синхронизированных пакетов
        """
        detailed = await self.roamwifi.get_packages(sku_id)
        rate = await self.rates.get_rate()
        now = datetime.utcnow()

        synced_ids = []
        for pkg in detailed.packages:
            if pkg.price is None:
                logger.warning(f"Package {pkg.price_id} in SKU {sku_id} has no price, skipping")
                continue

            stmt = select(PackagePrice).where(PackagePrice.provider_price_id == pkg.price_id)
            result = await self.db.execute(stmt)
            package_price = result.scalar_one_or_none()

            if not package_price:
                package_price = PackagePrice(provider_price_id=pkg.price_id)
                self.db.add(package_price)

            package_price.sku_id = sku_id
            package_price.api_code = pkg.api_code or None
            package_price.show_name = pkg.show_name or pkg.premark[:60] or None
            package_price.flows = pkg.flows
            package_price.unit = pkg.unit or None
            package_price.days = pkg.days
            package_price.raw_provider_price = pkg.price
            package_price.active = True
            package_price.last_synced_at = now
            apply_effective_price(package_price, rate)
            synced_ids.append(pkg.price_id)

        # Пакеты, которых больше нет у партнера
        deactivate = sql_update(PackagePrice).where(PackagePrice.sku_id == sku_id)
        if synced_ids:
            deactivate = deactivate.where(PackagePrice.provider_price_id.not_in(synced_ids))
        await self.db.execute(deactivate.values(active=False).execution_options(synchronize_session=False))

        await self.db.commit()
        logger.info(f"Synced {len(synced_ids)} packages for SKU {sku_id}")
        return len(synced_ids)
