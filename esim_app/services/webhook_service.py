"""Нормализация webhook QPay в событие оплаты."""
import logging
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from esim_app.services.qpay_service import map_payment_status

logger = logging.getLogger(__name__)


class WebhookPayloadError(ValueError):
    """Webhook не удалось разобрать. Заказы не меняются."""


class QPayWebhookPayload(BaseModel):
    """Тело webhook от QPay. Числовые id приводятся к строке."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    invoice_id: str
    sender_invoice_no: str
    transaction_id: str
    payment_status: str
    amount: Decimal
    paid_amount: Decimal
    payment_date: str

    @field_validator("invoice_id", "sender_invoice_no", "payment_status")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class PaymentEvent(BaseModel):
    """Каноническое событие оплаты для OrderService."""

    order_number: str
    invoice_id: str
    transaction_id: str
    provider_status: str
    status: str  # pending / paid / failed / cancelled
    amount: Decimal
    paid_amount: Decimal
    payment_date: str

    def as_payload(self) -> dict:
        """Данные для сохранения в PaymentTransaction.raw_payload."""
        return {
            "invoice_id": self.invoice_id,
            "transaction_id": self.transaction_id,
            "payment_status": self.provider_status,
            "amount": str(self.amount),
            "paid_amount": str(self.paid_amount),
            "payment_date": self.payment_date,
        }


def parse_qpay_webhook(data: Any) -> PaymentEvent:
    """
    Разобрать webhook QPay.

    Raises:
        WebhookPayloadError: Не хватает полей, неверные типы или неизвестный статус
    """
    if not isinstance(data, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")

    try:
        payload = QPayWebhookPayload.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in e.errors())
        raise WebhookPayloadError(f"Invalid webhook fields: {fields}")

    status = map_payment_status(payload.payment_status)
    if status == "unknown":
        raise WebhookPayloadError(f"Unknown payment_status: {payload.payment_status}")

    event = PaymentEvent(
        order_number=payload.sender_invoice_no,
        invoice_id=payload.invoice_id,
        transaction_id=payload.transaction_id,
        provider_status=payload.payment_status,
        status=status,
        amount=payload.amount,
        paid_amount=payload.paid_amount,
        payment_date=payload.payment_date,
    )
    logger.info(f"QPay webhook parsed: order={event.order_number} invoice={event.invoice_id} status={event.status}")
    return event
