"""Общие фикстуры: БД SQLite на тест, фейковые QPay/RoamWiFi, HTTP-клиент приложения."""
import asyncio
import os
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

# Настройки читаются при импорте esim_app.config
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_esim.db")
os.environ["QPAY_PASSWORD"] = "qpay-secret"
os.environ["QPAY_MERCHANT_ID"] = "merchant-1"
os.environ["QPAY_USERNAME"] = "esim_shop"
os.environ["ROAMWIFI_PHONENUMBER"] = "99112233"
os.environ["ROAMWIFI_PASSWORD"] = "secret"
os.environ["ROAMWIFI_API_KEY"] = "rw-api-key"

import pytest
from httpx import ASGITransport, AsyncClient

import esim_app.models  # noqa: F401
from esim_app.core.dependencies import get_qpay_service, get_roamwifi_service
from esim_app.database import Base, build_engine, build_session_factory, get_db
from esim_app.main import app
from esim_app.models import CurrencyRate, PackagePrice, Product
from esim_app.services.qpay_service import Invoice, PaymentCheck, QPayError, QPayService
from esim_app.services.roamwifi_service import (
    PartnerPackages,
    PartnerSKU,
    ProvisioningResult,
    RoamWiFiService,
)


class FakeQPay(QPayService):
    """QPay без сети: счета INV-1, INV-2, ... и настраиваемый статус проверки."""

    def __init__(self):
        super().__init__()
        self.invoices: list[dict] = []
        self.checks: list[str] = []
        self.fail_with: str | None = None
        self.check_status = "PENDING"

    async def create_invoice(self, order_number, description, payer_contact, amount):
        if self.fail_with:
            raise QPayError(self.fail_with)
        self.invoices.append(
            {
                "order_number": order_number,
                "description": description,
                "payer_contact": payer_contact,
                "amount": amount,
            }
        )
        n = len(self.invoices)
        return Invoice(
            invoice_id=f"INV-{n}",
            qr_code=f"qr-{n}",
            web_url=f"https://qpay.test/invoice/{n}",
            app_url=f"qpay://invoice/{n}",
        )

    async def check_payment(self, invoice_id):
        self.checks.append(invoice_id)
        return PaymentCheck(
            invoice_id=invoice_id,
            provider_status=self.check_status,
            status=self.check_status.lower(),
            transaction_id="TX-CHECK",
            raw={"invoice_id": invoice_id, "payment_status": self.check_status},
        )


class FakeRoamWiFi(RoamWiFiService):
    """RoamWiFi без сети со счетчиком вызовов createOrder."""

    def __init__(self):
        super().__init__()
        self.create_calls: list[dict] = []
        self.pdf_emails: list[tuple[str, str]] = []
        self.error: Exception | None = None
        self.pdf_error: Exception | None = None
        self.skus: list[PartnerSKU] = []
        self.packages: dict[str, PartnerPackages] = {}

    async def create_order(self, sku_id, package_id, contact_email, contact_phone=None, quantity=1):
        self.create_calls.append(
            {
                "sku_id": sku_id,
                "package_id": package_id,
                "contact_email": contact_email,
                "contact_phone": contact_phone,
                "quantity": quantity,
            }
        )
        # Отдаем управление, чтобы конкурирующие обработчики успели вклиниться
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        n = len(self.create_calls)
        return ProvisioningResult(
            order_id=f"RW-{n}",
            status="success",
            qr_code="LPA:1$smdp.test$ACT-CODE",
            activation_code="ACT-CODE",
            esim_data={"iccid": "8997600000000000001"},
        )

    async def send_pdf_email(self, order_id, email):
        self.pdf_emails.append((order_id, email))
        if self.pdf_error:
            raise self.pdf_error

    async def list_skus(self):
        return list(self.skus)

    async def get_packages(self, sku_id):
        return self.packages[sku_id]


@pytest.fixture
async def test_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'esim.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture
async def test_db(test_session_factory):
    async with test_session_factory() as session:
        yield session


@pytest.fixture
def fake_qpay():
    return FakeQPay()


@pytest.fixture
def fake_roamwifi():
    return FakeRoamWiFi()


@pytest.fixture
async def catalog(test_db):
    """Продукт SKU 158, пакет 5001 (10.00 USD, наценка 20%) и свежий курс 3450."""
    product = Product(
        sku_id="158",
        name="Mongolia",
        data_limit="1GB",
        validity_days=7,
        countries=["MN"],
    )
    package = PackagePrice(
        sku_id="158",
        provider_price_id=5001,
        api_code="MN-1GB-7D",
        show_name="1GB 7 days",
        flows=Decimal("1"),
        unit="GB",
        days=7,
        raw_provider_price=Decimal("10.00"),
        markup_percent=Decimal("20"),
        effective_price_usd=Decimal("12.00"),
        effective_price_local=Decimal("41400.00"),
        exchange_rate=Decimal("3450"),
        price_source="markup",
        active=True,
    )
    other_sku_package = PackagePrice(
        sku_id="160",
        provider_price_id=6001,
        raw_provider_price=Decimal("5.00"),
        effective_price_usd=Decimal("5.00"),
        price_source="base",
        active=True,
    )
    rate = CurrencyRate(
        from_currency="USD",
        to_currency="MNT",
        rate=Decimal("3450"),
        source="manual",
        last_updated=datetime.utcnow(),
    )
    test_db.add_all([product, package, other_sku_package, rate])
    await test_db.commit()
    return SimpleNamespace(product=product, package=package, other_sku_package=other_sku_package, rate=rate)


@pytest.fixture
async def client(test_session_factory, fake_qpay, fake_roamwifi):
    """HTTP-клиент приложения с тестовой БД и фейковыми адаптерами."""

    async def override_get_db():
        async with test_session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_qpay_service] = lambda: fake_qpay
    app.dependency_overrides[get_roamwifi_service] = lambda: fake_roamwifi

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()


def qpay_webhook_payload(order_number: str, invoice_id: str = "INV-1", status: str = "PAID", amount: str = "41400") -> dict:
    return {
        "invoice_id": invoice_id,
        "sender_invoice_no": order_number,
        "transaction_id": "TX-100",
        "payment_status": status,
        "amount": amount,
        "paid_amount": amount,
        "payment_date": "2026-10-18T10:00:00",
    }


async def drain_background_tasks():
    """Дать отработать fire-and-forget задачам."""
    for _ in range(5):
        await asyncio.sleep(0)
