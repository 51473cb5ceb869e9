"""Модель цены пакета провайдера."""
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, Numeric, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from esim_app.database import Base


class PackagePrice(Base):
    """
    Вариант пакета от RoamWiFi (объем x срок) с ценовой надстройкой администратора.

    effective_price_usd / effective_price_local всегда пересчитываются сразу
    при изменении raw_provider_price, markup_percent или override_price_usd.
    """

    __tablename__ = "package_prices"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    sku_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    provider_price_id: Mapped[int] = mapped_column(nullable=False, unique=True)
    api_code: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    show_name: Mapped[str | None] = mapped_column(String, nullable=True)
    flows: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)  # Объем данных
    unit: Mapped[str | None] = mapped_column(String, nullable=True)  # MB / GB
    days: Mapped[int | None] = mapped_column(nullable=True)
    raw_provider_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)  # USD

    # Надстройка администратора: markup и override взаимоисключающие
    markup_percent: Mapped[Decimal | None] = mapped_column(Numeric(6, 2), nullable=True)
    override_price_usd: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    effective_price_usd: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    effective_price_local: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    exchange_rate: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    price_source: Mapped[str] = mapped_column(String, default="base")  # base / markup / override

    active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)
