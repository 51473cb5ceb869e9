"""Модель продукта (eSIM-направление из каталога)."""
import uuid
from datetime import datetime

from sqlalchemy import String, Text, Boolean, JSON
from sqlalchemy.orm import Mapped, mapped_column

from esim_app.database import Base


class Product(Base):
    """Модель продукта."""

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    sku_id: Mapped[str] = mapped_column(String, nullable=False, index=True)  # SKU у RoamWiFi
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_limit: Mapped[str | None] = mapped_column(String, nullable=True)
    validity_days: Mapped[int | None] = mapped_column(nullable=True)
    countries: Mapped[list | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)
