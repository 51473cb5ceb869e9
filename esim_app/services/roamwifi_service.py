"""Сервис для работы с провайдером eSIM RoamWiFi."""
import hashlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from esim_app.config import settings

logger = logging.getLogger(__name__)

# Разные поколения API отвечают то "0", то "200", то числом
SUCCESS_CODES = {"0", "200"}


class RoamWiFiError(ValueError):
    """Ошибка RoamWiFi: бизнес-ошибка партнера, таймаут или сетевая ошибка."""


def generate_signature(params: dict[str, Any], sign_key: str | None = None) -> str:
    """
    Подпись запроса RoamWiFi.

    Ключи сортируются, склеиваются как key=value без разделителей,
    в конец дописывается общий ключ, от строки берется MD5 в hex.
    Параметр sign в подписи не участвует.
    """
    if sign_key is None:
        sign_key = settings.roamwifi_sign_key
    content = "".join(f"{key}={params[key]}" for key in sorted(params) if key != "sign")
    return hashlib.md5((content + sign_key).encode("utf-8")).hexdigest()


def normalize_code(value: Any) -> str:
    """Код ответа партнера к строке: 0, 0.0, "0" -> "0"."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _as_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return default


def _as_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


@dataclass(frozen=True)
class PartnerSKU:
    """SKU (направление) у партнера."""

    sku_id: str
    display: str
    country_code: str


@dataclass(frozen=True)
class PartnerPackage:
    """Пакет внутри SKU."""

    price_id: int
    api_code: str
    show_name: str
    flows: Decimal | None
    unit: str
    days: int
    price: Decimal | None
    premark: str = ""

    @property
    def data_limit(self) -> str:
        if self.flows is None:
            return ""
        return f"{self.flows.normalize():f}{self.unit}"


@dataclass(frozen=True)
class PartnerPackages:
    """Ответ getPackages: метаданные SKU и список пакетов."""

    sku_id: str
    display: str
    support_country: list[str]
    packages: list[PartnerPackage]


@dataclass(frozen=True)
class ProvisioningResult:
    """Результат createOrder."""

    order_id: str
    status: str
    qr_code: str
    activation_code: str
    esim_data: dict = field(default_factory=dict)

    def as_delivery_data(self) -> dict:
        """Артефакт доставки, который сохраняется в заказе."""
        return {
            "roamwifi_order_id": self.order_id,
            "status": self.status,
            "qr_code": self.qr_code,
            "activation_code": self.activation_code,
            "esim_data": self.esim_data,
        }


class RoamWiFiService:
    """
    Адаптер RoamWiFi.

    Токен не хранится в экземпляре: каждая операция заново логинится
    и передает полученный токен явно.
    """

    LOGIN_ENDPOINT = "/api_order/login"
    SKUS_ENDPOINT = "/api_esim/getSkus"
    PACKAGES_ENDPOINT = "/api_esim/getPackages"
    CREATE_ORDER_ENDPOINT = "/api_order/createOrder"

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = settings.roamwifi_api_url.rstrip("/")
        self._transport = transport

    async def authenticate(self) -> str:
        """Получить свежий токен партнера."""
        if not settings.roamwifi_phonenumber or not settings.roamwifi_password:
            raise RoamWiFiError("RoamWiFi credentials not configured")

        params = {
            "phonenumber": settings.roamwifi_phonenumber,
            "password": settings.roamwifi_password,
        }
        payload = await self._post(self.LOGIN_ENDPOINT, params)

        data = payload.get("data")
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            message = payload.get("message") or payload.get("msg") or f"token not found in response: {payload}"
            raise RoamWiFiError(f"RoamWiFi login failed: {message}")
        return str(token)

    async def list_skus(self) -> list[PartnerSKU]:
        """Список доступных SKU."""
        token = await self.authenticate()
        payload = await self._signed_call(self.SKUS_ENDPOINT, {}, token)

        data = payload.get("data")
        if not isinstance(data, list):
            raise RoamWiFiError("RoamWiFi getSkus: unexpected data format")

        skus = []
        for item in data:
            if not isinstance(item, dict):
                continue
            skus.append(
                PartnerSKU(
                    sku_id=_as_str(item.get("skuid")),
                    display=_as_str(item.get("display")),
                    country_code=_as_str(item.get("countryCode")),
                )
            )
        logger.info(f"RoamWiFi returned {len(skus)} SKUs")
        return skus

    async def get_packages(self, sku_id: str) -> PartnerPackages:
        """Пакеты для SKU."""
        token = await self.authenticate()
        payload = await self._signed_call(self.PACKAGES_ENDPOINT, {"skuId": sku_id}, token)

        data = payload.get("data")
        if not isinstance(data, dict):
            raise RoamWiFiError("RoamWiFi getPackages: unexpected data format")

        support_country = [
            _as_str(country) for country in data.get("supportCountry") or [] if country is not None
        ]

        packages = []
        for item in data.get("esimPackageDtoList") or []:
            if not isinstance(item, dict):
                continue
            price_id = _as_int(item.get("priceid"), default=-1)
            if price_id < 0:
                logger.warning(f"Skipping RoamWiFi package without priceid in SKU {sku_id}: {item}")
                continue
            packages.append(
                PartnerPackage(
                    price_id=price_id,
                    api_code=_as_str(item.get("apiCode")),
                    show_name=_as_str(item.get("showName")),
                    flows=_as_decimal(item.get("flows")),
                    unit=_as_str(item.get("unit")),
                    days=_as_int(item.get("days")),
                    price=_as_decimal(item.get("price")),
                    premark=_as_str(item.get("premark")),
                )
            )

        return PartnerPackages(
            sku_id=_as_str(data.get("skuid")) or sku_id,
            display=_as_str(data.get("display")),
            support_country=support_country,
            packages=packages,
        )

    async def create_order(
        self,
        sku_id: str,
        package_id: str,
        contact_email: str,
        contact_phone: str | None = None,
        quantity: int = 1,
    ) -> ProvisioningResult:
        """
        Заказать eSIM у партнера.

        Raises:
            RoamWiFiError: Ошибка партнера (сообщение сохраняется как есть), таймаут или сетевая ошибка
        """
        token = await self.authenticate()
        params = {
            "sku_id": sku_id,
            "package_id": package_id,
            "customer_email": contact_email,
            "customer_phone": contact_phone or "",
            "quantity": str(quantity),
        }
        logger.info(f"Creating RoamWiFi order: sku={sku_id} package={package_id} email={contact_email}")
        payload = await self._signed_call(self.CREATE_ORDER_ENDPOINT, params, token)

        data = payload.get("data")
        if not isinstance(data, dict):
            raise RoamWiFiError(f"RoamWiFi createOrder: missing data field: {payload}")

        esim_data = data.get("esim_data")
        result = ProvisioningResult(
            order_id=_as_str(data.get("order_id") or data.get("orderId")),
            status=_as_str(data.get("status")),
            qr_code=_as_str(data.get("qr_code") or data.get("qrcode")),
            activation_code=_as_str(data.get("activation_code")),
            esim_data=esim_data if isinstance(esim_data, dict) else {},
        )
        if not result.order_id:
            raise RoamWiFiError(f"RoamWiFi createOrder: order id missing in response: {data}")

        logger.info(f"RoamWiFi order created: {result.order_id}, status: {result.status}")
        return result

    async def send_pdf_email(self, order_id: str, email: str) -> None:
        """Попросить партнера отправить PDF с eSIM на email клиента."""
        url = f"{self.base_url}/order/{order_id}/send-pdf"
        headers = {
            "Authorization": f"Bearer {settings.roamwifi_api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=settings.roamwifi_timeout, transport=self._transport) as client:
                response = await client.post(url, json={"email": email}, headers=headers)
        except httpx.TimeoutException:
            raise RoamWiFiError("RoamWiFi API timeout")
        except httpx.HTTPError as e:
            raise RoamWiFiError(f"RoamWiFi API request error: {e}")

        payload = self._decode(response)
        if normalize_code(payload.get("code")) not in SUCCESS_CODES:
            raise RoamWiFiError(f"RoamWiFi send-pdf error: {payload.get('message') or payload}")
        logger.info(f"RoamWiFi PDF e-mail sent for order {order_id} to {email}")

    async def _signed_call(self, endpoint: str, params: dict[str, str], token: str) -> dict:
        """Подписанный вызов с токеном и проверкой кода ответа."""
        signed = {"token": token, **params}
        payload = await self._post(endpoint, signed)

        code = normalize_code(payload.get("code"))
        if code not in SUCCESS_CODES:
            message = payload.get("message") or payload.get("msg")
            if message:
                raise RoamWiFiError(f"RoamWiFi API error: {message}")
            raise RoamWiFiError(f"RoamWiFi API error code={code} body={payload}")
        return payload

    async def _post(self, endpoint: str, params: dict[str, str]) -> dict:
        # Пустые необязательные параметры не отправляются и не подписываются
        query = {key: value for key, value in params.items() if value != ""}
        query["sign"] = generate_signature(query)

        url = f"{self.base_url}{endpoint}"
        logger.debug(f"RoamWiFi request: {url} params={sorted(query)}")
        try:
            async with httpx.AsyncClient(timeout=settings.roamwifi_timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    params=query,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.TimeoutException:
            logger.error(f"RoamWiFi API timeout: {endpoint}")
            raise RoamWiFiError("RoamWiFi API timeout")
        except httpx.HTTPError as e:
            logger.error(f"RoamWiFi API request error: {endpoint}: {e}")
            raise RoamWiFiError(f"RoamWiFi API request error: {e}")

        return self._decode(response)

    @staticmethod
    def _decode(response: httpx.Response) -> dict:
        logger.debug(f"RoamWiFi response {response.status_code}: {response.text}")
        try:
            payload = response.json()
        except ValueError:
            raise RoamWiFiError(f"RoamWiFi API returned non-JSON response: {response.status_code} - {response.text}")
        if not isinstance(payload, dict):
            raise RoamWiFiError(f"RoamWiFi API returned unexpected payload: {payload}")
        return payload
