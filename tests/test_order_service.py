"""Заказ: создание, оплата через webhook, выпуск eSIM не более одного раза."""
import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from esim_app.models import Order, OrderStatus, PaymentTransaction
from esim_app.services.order_service import (
    InvoiceCreationError,
    OrderNotFoundError,
    OrderService,
    OrderStateError,
    OrderValidationError,
)
from esim_app.services.pricing_service import PricingError, PricingService
from esim_app.services.roamwifi_service import RoamWiFiError
from esim_app.services.webhook_service import parse_qpay_webhook

from conftest import drain_background_tasks, qpay_webhook_payload


@pytest.fixture
def service(test_db, fake_qpay, fake_roamwifi):
    return OrderService(test_db, qpay=fake_qpay, roamwifi=fake_roamwifi)


async def create_paid_ready_order(service, catalog):
    result = await service.create_order(
        product_id=catalog.product.id,
        customer_email="traveler@example.mn",
        customer_phone="99001122",
        provider_price_id=5001,
    )
    return result.order


async def order_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(Order))).scalar_one()


async def test_create_order_snapshots_local_amount(service, catalog, fake_qpay):
    result = await service.create_order(
        product_id=catalog.product.id,
        customer_email="traveler@example.mn",
        provider_price_id=5001,
    )
    order = result.order

    assert order.amount == Decimal("41400")
    assert order.currency == "MNT"
    assert order.status == OrderStatus.PENDING
    assert order.order_number.startswith("ESIM")
    assert order.qpay_invoice_id == "INV-1"
    assert result.invoice.web_url == "https://qpay.test/invoice/1"
    assert fake_qpay.invoices[0]["amount"] == Decimal("41400")
    assert fake_qpay.invoices[0]["order_number"] == order.order_number

    transaction = await service.get_current_transaction(order)
    assert transaction.status == "pending"
    assert transaction.provider_transaction_id == "INV-1"


async def test_create_order_by_package_price_id(service, catalog):
    result = await service.create_order(
        product_id=catalog.product.id,
        customer_email="traveler@example.mn",
        package_price_id=catalog.package.id,
    )
    assert result.order.provider_price_id == 5001
    assert result.order.package_price_id == catalog.package.id


async def test_amount_not_changed_by_later_price_updates(service, test_db, catalog):
    order = await create_paid_ready_order(service, catalog)

    await PricingService(test_db).set_markup(5001, Decimal("50"))
    later = await create_paid_ready_order(service, catalog)

    reloaded = await service.get_order(order.order_number)
    assert reloaded.amount == Decimal("41400")
    assert later.amount == Decimal("51750")


async def test_custom_price_overrides_package_price(service, catalog):
    result = await service.create_order(
        product_id=catalog.product.id,
        customer_email="traveler@example.mn",
        provider_price_id=5001,
        custom_price_usd=Decimal("5.00"),
    )
    assert result.order.amount == Decimal("17250")


async def test_package_from_other_sku_rejected(service, test_db, catalog, fake_qpay):
    with pytest.raises(OrderValidationError):
        await service.create_order(
            product_id=catalog.product.id,
            customer_email="traveler@example.mn",
            provider_price_id=6001,
        )
    assert await order_count(test_db) == 0
    assert fake_qpay.invoices == []


async def test_missing_package_selection_rejected(service, catalog):
    with pytest.raises(OrderValidationError, match="Package selection"):
        await service.create_order(product_id=catalog.product.id, customer_email="traveler@example.mn")


async def test_missing_contact_rejected(service, test_db, catalog):
    with pytest.raises(OrderValidationError):
        await service.create_order(product_id=catalog.product.id, customer_email="", provider_price_id=5001)
    assert await order_count(test_db) == 0


async def test_inactive_package_rejected(service, test_db, catalog):
    catalog.package.active = False
    await test_db.commit()
    with pytest.raises(OrderValidationError, match="not available"):
        await create_paid_ready_order(service, catalog)


async def test_fallback_rate_rejected_when_live_rate_required(service, test_db, catalog, monkeypatch):
    from esim_app.config import settings
    from esim_app.services.rate_service import RateQuote

    async def fallback_quote(*args, **kwargs):
        return RateQuote(rate=settings.fallback_exchange_rate, source="fallback")

    monkeypatch.setattr(settings, "require_live_rate_for_orders", True)
    monkeypatch.setattr(service.rates, "get_quote", fallback_quote)

    with pytest.raises(PricingError):
        await create_paid_ready_order(service, catalog)
    assert await order_count(test_db) == 0


async def test_invoice_failure_leaves_failed_order(service, test_db, catalog, fake_qpay):
    fake_qpay.fail_with = "QPay API error: Invalid merchant credentials"

    with pytest.raises(InvoiceCreationError) as exc_info:
        await create_paid_ready_order(service, catalog)

    order = await service.get_order(exc_info.value.order_number)
    assert order.status == OrderStatus.FAILED
    assert order.failure_reason == "QPay API error: Invalid merchant credentials"
    assert order.qpay_invoice_id is None


async def test_paid_webhook_completes_order(service, catalog, fake_roamwifi):
    order = await create_paid_ready_order(service, catalog)

    event = parse_qpay_webhook(qpay_webhook_payload(order.order_number))
    order = await service.process_payment_webhook(event)

    assert order.status == OrderStatus.COMPLETED
    assert order.roamwifi_order_id == "RW-1"
    assert order.esim_data["qr_code"] == "LPA:1$smdp.test$ACT-CODE"
    assert fake_roamwifi.create_calls == [
        {
            "sku_id": "158",
            "package_id": "5001",
            "contact_email": "traveler@example.mn",
            "contact_phone": "99001122",
            "quantity": 1,
        }
    ]
    transaction = await service.get_current_transaction(order)
    assert transaction.status == "paid"
    assert transaction.provider_transaction_id == "TX-100"

    await drain_background_tasks()
    assert fake_roamwifi.pdf_emails == [("RW-1", "traveler@example.mn")]


async def test_redelivered_webhook_is_noop(service, catalog, fake_roamwifi):
    order = await create_paid_ready_order(service, catalog)
    event = parse_qpay_webhook(qpay_webhook_payload(order.order_number))

    for _ in range(3):
        order = await service.process_payment_webhook(event)

    assert order.status == OrderStatus.COMPLETED
    assert len(fake_roamwifi.create_calls) == 1


async def test_unknown_order_webhook(service, test_db, catalog, fake_roamwifi):
    order = await create_paid_ready_order(service, catalog)
    event = parse_qpay_webhook(qpay_webhook_payload("ESIM0000000000NOPE"))

    with pytest.raises(OrderNotFoundError):
        await service.process_payment_webhook(event)

    assert fake_roamwifi.create_calls == []
    reloaded = await service.get_order(order.order_number)
    assert reloaded.status == OrderStatus.PENDING
    transaction = await service.get_current_transaction(reloaded)
    assert transaction.status == "pending"


async def test_partner_error_fails_order_and_keeps_payment(service, catalog, fake_roamwifi):
    fake_roamwifi.error = RoamWiFiError("RoamWiFi API error: Insufficient balance")
    order = await create_paid_ready_order(service, catalog)
    event = parse_qpay_webhook(qpay_webhook_payload(order.order_number))

    order = await service.process_payment_webhook(event)

    assert order.status == OrderStatus.FAILED
    assert order.failure_reason == "RoamWiFi API error: Insufficient balance"
    transaction = await service.get_current_transaction(order)
    assert transaction.status == "paid"

    # Повторная доставка не запускает выпуск еще раз
    fake_roamwifi.error = None
    order = await service.process_payment_webhook(event)
    assert order.status == OrderStatus.FAILED
    assert len(fake_roamwifi.create_calls) == 1


async def test_concurrent_paid_webhooks_provision_once(test_session_factory, catalog, fake_qpay, fake_roamwifi):
    async with test_session_factory() as db:
        order = await create_paid_ready_order(OrderService(db, qpay=fake_qpay, roamwifi=fake_roamwifi), catalog)

    event = parse_qpay_webhook(qpay_webhook_payload(order.order_number))

    async def deliver():
        async with test_session_factory() as db:
            service = OrderService(db, qpay=fake_qpay, roamwifi=fake_roamwifi)
            return await service.process_payment_webhook(event)

    await asyncio.gather(deliver(), deliver())

    assert len(fake_roamwifi.create_calls) == 1
    async with test_session_factory() as db:
        final = await OrderService(db, qpay=fake_qpay, roamwifi=fake_roamwifi).get_order(order.order_number)
    assert final.status == OrderStatus.COMPLETED


async def test_failed_payment_fails_pending_order(service, catalog, fake_roamwifi):
    order = await create_paid_ready_order(service, catalog)
    event = parse_qpay_webhook(qpay_webhook_payload(order.order_number, status="FAILED"))

    order = await service.process_payment_webhook(event)

    assert order.status == OrderStatus.FAILED
    assert fake_roamwifi.create_calls == []


async def test_cancelled_payment_keeps_order_pending(service, catalog):
    order = await create_paid_ready_order(service, catalog)
    event = parse_qpay_webhook(qpay_webhook_payload(order.order_number, status="CANCELLED"))

    order = await service.process_payment_webhook(event)

    assert order.status == OrderStatus.PENDING
    transaction = await service.get_current_transaction(order)
    assert transaction.status == "cancelled"


async def test_provisioning_skipped_for_unpaid_order(service, catalog, fake_roamwifi):
    order = await create_paid_ready_order(service, catalog)

    await service.provision_order(order)

    assert order.status == OrderStatus.PENDING
    assert fake_roamwifi.create_calls == []


async def test_initiate_payment_reissues_invoice(service, test_db, catalog, fake_qpay):
    order = await create_paid_ready_order(service, catalog)

    result = await service.initiate_payment(order.order_number)

    assert result.invoice.invoice_id == "INV-2"
    assert result.order.qpay_invoice_id == "INV-2"
    assert result.order.amount == Decimal("41400")
    assert fake_qpay.checks == ["INV-1"]
    transactions = (
        await test_db.execute(select(PaymentTransaction).where(PaymentTransaction.order_id == order.id))
    ).scalars().all()
    assert len(transactions) == 1
    assert transactions[0].provider_transaction_id == "INV-2"


async def test_initiate_payment_reconciles_already_paid_invoice(service, catalog, fake_qpay, fake_roamwifi):
    order = await create_paid_ready_order(service, catalog)
    fake_qpay.check_status = "PAID"

    with pytest.raises(OrderStateError, match="already completed"):
        await service.initiate_payment(order.order_number)

    reloaded = await service.get_order(order.order_number)
    assert reloaded.status == OrderStatus.COMPLETED
    assert len(fake_roamwifi.create_calls) == 1
    assert len(fake_qpay.invoices) == 1


async def test_initiate_payment_rejected_for_completed_order(service, catalog):
    order = await create_paid_ready_order(service, catalog)
    await service.process_payment_webhook(parse_qpay_webhook(qpay_webhook_payload(order.order_number)))

    with pytest.raises(OrderStateError):
        await service.initiate_payment(order.order_number)


async def test_initiate_payment_unknown_order(service):
    with pytest.raises(OrderNotFoundError):
        await service.initiate_payment("ESIM404")


async def test_delivery_email_failure_keeps_order_completed(service, test_db, catalog, fake_roamwifi):
    fake_roamwifi.pdf_error = RoamWiFiError("SMTP relay unavailable")
    order = await create_paid_ready_order(service, catalog)
    event = parse_qpay_webhook(qpay_webhook_payload(order.order_number))

    order = await service.process_payment_webhook(event)
    await drain_background_tasks()

    assert fake_roamwifi.pdf_emails == [("RW-1", "traveler@example.mn")]
    await test_db.refresh(order)
    assert order.status == OrderStatus.COMPLETED
    assert order.failure_reason is None
    assert len(fake_roamwifi.create_calls) == 1


async def test_list_user_orders(service, catalog):
    user_id = uuid.uuid4()
    own = []
    for _ in range(3):
        result = await service.create_order(
            product_id=catalog.product.id,
            customer_email="traveler@example.mn",
            provider_price_id=5001,
            user_id=user_id,
        )
        own.append(result.order.order_number)
    await create_paid_ready_order(service, catalog)

    orders, total = await service.list_user_orders(user_id, page=1, limit=2)
    assert total == 3
    assert len(orders) == 2

    rest, _ = await service.list_user_orders(user_id, page=2, limit=2)
    assert {o.order_number for o in orders + rest} == set(own)

    orders, total = await service.list_user_orders(uuid.uuid4())
    assert (orders, total) == ([], 0)


async def test_list_orders_filters_by_status(service, catalog, fake_roamwifi):
    fake_roamwifi.error = RoamWiFiError("RoamWiFi API error: insufficient balance")
    failed = await create_paid_ready_order(service, catalog)
    await service.process_payment_webhook(parse_qpay_webhook(qpay_webhook_payload(failed.order_number)))
    await create_paid_ready_order(service, catalog)

    orders, total = await service.list_orders()
    assert total == 2

    orders, total = await service.list_orders(status=OrderStatus.FAILED)
    assert total == 1
    assert orders[0].order_number == failed.order_number
    assert "insufficient balance" in orders[0].failure_reason


async def test_get_by_id(service, catalog):
    order = await create_paid_ready_order(service, catalog)

    assert (await service.get_by_id(order.id)).order_number == order.order_number
    with pytest.raises(OrderNotFoundError):
        await service.get_by_id(uuid.uuid4())
