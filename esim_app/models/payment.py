"""Модель платежной транзакции."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import String, Numeric, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from esim_app.database import Base

if TYPE_CHECKING:
    from esim_app.models.order import Order


class PaymentTransaction(Base):
    """Попытка оплаты в QPay. Обновляется при перевыпуске счета и по webhook."""

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    provider_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)  # invoice_id или transaction_id
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)  # pending / paid / failed / cancelled
    payment_method: Mapped[str] = mapped_column(String, default="qpay")
    raw_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    order: Mapped["Order"] = relationship("Order", back_populates="payment_transactions")
