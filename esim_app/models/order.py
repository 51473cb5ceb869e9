"""Модель заказа eSIM."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import String, Text, Numeric, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from esim_app.database import Base

if TYPE_CHECKING:
    from esim_app.models.payment import PaymentTransaction
    from esim_app.models.product import Product
    from esim_app.models.package_price import PackagePrice


class OrderStatus:
    """Статусы заказа. Переходы только вперед: pending -> paid -> processing -> completed."""

    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"  # Зарезервирован

    TERMINAL = (COMPLETED, FAILED, CANCELLED)


class Order(Base):
    """Модель заказа."""

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)  # None - гостевой заказ
    product_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("products.id"), nullable=False)
    package_price_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("package_prices.id"), nullable=True, index=True)
    provider_price_id: Mapped[int | None] = mapped_column(nullable=True, index=True)

    # Сумма фиксируется при создании и больше не пересчитывается
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="MNT")

    customer_email: Mapped[str] = mapped_column(String, nullable=False)
    customer_phone: Mapped[str | None] = mapped_column(String, nullable=True)

    qpay_invoice_id: Mapped[str | None] = mapped_column(String, nullable=True)
    roamwifi_order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    esim_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # QR / activation code
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String, default=OrderStatus.PENDING)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    product: Mapped["Product"] = relationship("Product")
    package_price: Mapped["PackagePrice | None"] = relationship("PackagePrice")
    payment_transactions: Mapped[list["PaymentTransaction"]] = relationship(
        "PaymentTransaction",
        back_populates="order",
        order_by="PaymentTransaction.created_at",
    )
