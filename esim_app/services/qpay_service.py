"""Сервис для работы с платежным провайдером QPay."""
import base64
import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Any

import httpx

from esim_app.config import settings

logger = logging.getLogger(__name__)

# Статусы QPay -> локальные статусы
PAYMENT_STATUS_MAP = {
    "PAID": "paid",
    "PENDING": "pending",
    "FAILED": "failed",
    "CANCELLED": "cancelled",
}


class QPayError(ValueError):
    """Ошибка QPay: код ответа != 0 или сетевая ошибка."""


@dataclass(frozen=True)
class Invoice:
    """Созданный счет QPay."""

    invoice_id: str
    qr_code: str
    web_url: str
    app_url: str

    def as_payload(self) -> dict:
        return {
            "invoice_id": self.invoice_id,
            "qr_code": self.qr_code,
            "web_url": self.web_url,
            "app_url": self.app_url,
        }


@dataclass(frozen=True)
class PaymentCheck:
    """Результат проверки оплаты."""

    invoice_id: str
    provider_status: str
    status: str
    transaction_id: str
    raw: dict


def map_payment_status(provider_status: str) -> str:
    """Статус QPay -> локальный статус. Неизвестный статус -> "unknown"."""
    return PAYMENT_STATUS_MAP.get((provider_status or "").upper(), "unknown")


def format_amount(amount: Decimal) -> int:
    """QPay принимает сумму в целых тугриках: дробная часть отбрасывается."""
    return int(Decimal(amount).to_integral_value(rounding=ROUND_DOWN))


def generate_order_number() -> str:
    """Номер заказа, он же sender_invoice_no в QPay."""
    return f"ESIM{int(time.time())}{uuid.uuid4().hex[:6].upper()}"


def compute_webhook_signature(invoice_id: str, amount: Decimal, payment_status: str, secret: str) -> str:
    """MD5(invoice_id + amount с 2 знаками + payment_status + secret)."""
    content = f"{invoice_id}{Decimal(amount):.2f}{payment_status}{secret}"
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def _response_code(payload: dict) -> str:
    code = payload.get("code", 0)
    if isinstance(code, float) and code.is_integer():
        code = int(code)
    return str(code).strip()


def _object_field(container: dict, key: str) -> dict:
    """Вложенный объект ответа; отсутствие значит пустой объект, не-объект считается ошибкой QPay."""
    value = container.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise QPayError(f"QPay API returned malformed '{key}': {value!r}")
    return value


class QPayService:
    """Адаптер QPay: создание счета и проверка оплаты. Повторов внутри нет."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.endpoint = settings.qpay_endpoint.rstrip("/")
        self._transport = transport

    async def create_invoice(
        self,
        order_number: str,
        description: str,
        payer_contact: str,
        amount: Decimal,
    ) -> Invoice:
        """
        Создать счет в QPay.

        Args:
            order_number: Номер заказа (sender_invoice_no)
            description: Описание для плательщика
            payer_contact: Email плательщика (invoice_receiver)
            amount: Сумма в MNT, будет усечена до целого

        Raises:
            QPayError: Если QPay вернул ошибку или недоступен
        """
        request_data = {
            "merchant_id": settings.qpay_merchant_id,
            "invoice_code": f"{settings.qpay_invoice_code}_{int(time.time())}",
            "sender_invoice_no": order_number,
            "invoice_receiver": payer_contact,
            "invoice_description": description,
            "amount": format_amount(amount),
            "callback_url": settings.qpay_callback_url,
        }
        logger.info(f"Creating QPay invoice for order {order_number}: amount={request_data['amount']} MNT")

        payload = await self._post("/invoice", request_data)
        data = _object_field(payload, "data")
        urls = _object_field(data, "urls")

        invoice_id = str(data.get("invoice_id") or "")
        if not invoice_id:
            raise QPayError(f"QPay invoice created but no invoice_id in response: {payload}")

        invoice = Invoice(
            invoice_id=invoice_id,
            qr_code=data.get("qr_code") or "",
            web_url=urls.get("web") or "",
            app_url=urls.get("app") or "",
        )
        logger.info(f"QPay invoice created: {invoice.invoice_id} for order {order_number}")
        return invoice

    async def check_payment(self, invoice_id: str) -> PaymentCheck:
        """Проверить статус оплаты счета."""
        request_data = {
            "merchant_id": settings.qpay_merchant_id,
            "invoice_id": invoice_id,
            "check_password": hashlib.md5(settings.qpay_password.encode("utf-8")).hexdigest(),
        }
        payload = await self._post("/payment/check", request_data)
        data = _object_field(payload, "data")

        provider_status = str(data.get("payment_status") or "")
        check = PaymentCheck(
            invoice_id=str(data.get("invoice_id") or invoice_id),
            provider_status=provider_status,
            status=map_payment_status(provider_status),
            transaction_id=str(data.get("transaction_id") or ""),
            raw=data,
        )
        logger.info(f"QPay invoice {invoice_id} payment status: {provider_status}")
        return check

    def verify_webhook_signature(self, data: dict[str, Any], signature: str) -> bool:
        """Проверить подпись webhook по полям invoice_id, amount, payment_status."""
        invoice_id = data.get("invoice_id")
        payment_status = data.get("payment_status")
        amount = data.get("amount")
        if not isinstance(invoice_id, str) or not isinstance(payment_status, str) or amount is None:
            return False
        try:
            expected = compute_webhook_signature(invoice_id, Decimal(str(amount)), payment_status, settings.qpay_password)
        except ArithmeticError:
            return False
        return hmac.compare_digest(expected, signature.strip().lower())

    def _auth_header(self) -> str:
        # Basic Auth с учетными данными мерчанта
        auth_string = f"{settings.qpay_username}:{settings.qpay_password}"
        return f"Basic {base64.b64encode(auth_string.encode()).decode()}"

    async def _post(self, path: str, request_data: dict) -> dict:
        url = f"{self.endpoint}{path}"
        try:
            async with httpx.AsyncClient(timeout=settings.qpay_timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    json=request_data,
                    headers={
                        "Authorization": self._auth_header(),
                        "Content-Type": "application/json",
                    },
                )
        except httpx.TimeoutException:
            logger.error(f"QPay API timeout: {path}")
            raise QPayError("QPay API timeout")
        except httpx.HTTPError as e:
            logger.error(f"QPay API request error: {path}: {e}")
            raise QPayError(f"QPay API request error: {e}")

        logger.debug(f"QPay response {response.status_code}: {response.text}")
        try:
            payload = response.json()
        except ValueError:
            raise QPayError(f"QPay API error: {response.status_code} - {response.text}")
        if not isinstance(payload, dict):
            raise QPayError(f"QPay API returned unexpected payload: {payload}")

        if _response_code(payload) != "0":
            raise QPayError(f"QPay API error: {payload.get('message') or payload}")
        return payload
