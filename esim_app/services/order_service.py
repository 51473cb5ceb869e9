"""Сервис для работы с заказами eSIM: счет -> оплата -> выпуск eSIM."""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update as sql_update
from sqlalchemy.ext.asyncio import AsyncSession

from esim_app.config import settings
from esim_app.models.order import Order, OrderStatus
from esim_app.models.package_price import PackagePrice
from esim_app.models.payment import PaymentTransaction
from esim_app.models.product import Product
from esim_app.services.pricing_service import PricingError, resolve_effective_price, resolve_package_price
from esim_app.services.qpay_service import Invoice, QPayError, QPayService, generate_order_number
from esim_app.services.rate_service import RateService
from esim_app.services.roamwifi_service import RoamWiFiError, RoamWiFiService
from esim_app.services.webhook_service import PaymentEvent

logger = logging.getLogger(__name__)

# Ссылки на фоновые задачи, чтобы их не собрал GC
_background_tasks: set[asyncio.Task] = set()


class OrderValidationError(ValueError):
    """Неверный выбор пакета или контактов. Заказ не создается."""


class OrderNotFoundError(LookupError):
    """Заказ не найден."""


class OrderStateError(ValueError):
    """Операция недопустима в текущем статусе заказа."""


class InvoiceCreationError(ValueError):
    """QPay не создал счет. Заказ сохранен со статусом failed."""

    def __init__(self, message: str, order_number: str):
        super().__init__(message)
        self.order_number = order_number


@dataclass
class CheckoutResult:
    """Заказ и счет для оплаты."""

    order: Order
    invoice: Invoice


class OrderService:
    """Сервис для работы с заказами."""

    def __init__(
        self,
        db: AsyncSession,
        qpay: QPayService | None = None,
        roamwifi: RoamWiFiService | None = None,
        rate_service: RateService | None = None,
    ):
        self.db = db
        self.qpay = qpay or QPayService()
        self.roamwifi = roamwifi or RoamWiFiService()
        self.rates = rate_service or RateService(db)

    async def create_order(
        self,
        product_id: uuid.UUID,
        customer_email: str,
        customer_phone: str | None = None,
        package_price_id: uuid.UUID | None = None,
        provider_price_id: int | None = None,
        user_id: uuid.UUID | None = None,
        custom_price_usd: Decimal | None = None,
    ) -> CheckoutResult:
        """
        Создать заказ и выставить счет в QPay.

        Цена берется из пакета в БД (override > markup > base) и переводится в MNT
        по текущему курсу. Сумма фиксируется в заказе и больше не пересчитывается.

        Raises:
            OrderValidationError: Неверный продукт, пакет или контакт
            PricingError: Нет курса или неверная ручная цена
            InvoiceCreationError: QPay не создал счет (заказ остается в failed)
        """
        customer_email = (customer_email or "").strip()
        if not customer_email or "@" not in customer_email:
            raise OrderValidationError("customer_email is required")

        product = await self.db.get(Product, product_id)
        if not product or not product.is_active:
            raise OrderValidationError(f"Product {product_id} not found")

        package_price = await self._select_package(package_price_id, provider_price_id)
        if package_price.sku_id != product.sku_id:
            raise OrderValidationError("Selected package does not belong to product sku")
        if not package_price.active:
            raise OrderValidationError(f"Package {package_price.provider_price_id} is not available")

        quote = await self.rates.get_quote()
        rate = quote.rate
        if settings.require_live_rate_for_orders and quote.is_fallback:
            logger.error("Only the fallback exchange rate is available and live rate is required for orders")
            rate = None

        if custom_price_usd is not None:
            if custom_price_usd <= 0:
                raise PricingError("custom_price_usd must be greater than 0")
            price = resolve_effective_price(package_price.raw_provider_price, None, custom_price_usd, rate)
        else:
            price = resolve_package_price(package_price, rate)

        if price.local is None:
            raise PricingError("Exchange rate is unavailable, order cannot be priced")

        order = Order(
            order_number=generate_order_number(),
            user_id=user_id,
            product_id=product.id,
            package_price_id=package_price.id,
            provider_price_id=package_price.provider_price_id,
            amount=price.local,
            currency=settings.local_currency,
            customer_email=customer_email,
            customer_phone=customer_phone or None,
            status=OrderStatus.PENDING,
        )
        self.db.add(order)
        await self.db.commit()
        await self.db.refresh(order)
        logger.info(
            f"Order {order.order_number} created: {price.usd} USD ({price.source}) x {price.rate} = "
            f"{order.amount} {order.currency}"
        )

        description = f"eSIM {product.name} - {package_price.show_name or product.data_limit or package_price.sku_id}"
        try:
            invoice = await self.qpay.create_invoice(order.order_number, description, customer_email, order.amount)
        except QPayError as e:
            logger.error(f"❌ Failed to create QPay invoice for order {order.order_number}: {e}")
            await self._transition(order, (OrderStatus.PENDING,), OrderStatus.FAILED, failure_reason=str(e))
            raise InvoiceCreationError(f"Failed to create QPay invoice: {e}", order.order_number)

        order.qpay_invoice_id = invoice.invoice_id
        self.db.add(
            PaymentTransaction(
                order_id=order.id,
                provider_transaction_id=invoice.invoice_id,
                amount=order.amount,
                status="pending",
                payment_method="qpay",
                raw_payload=invoice.as_payload(),
            )
        )
        await self.db.commit()
        await self.db.refresh(order)
        return CheckoutResult(order=order, invoice=invoice)

    async def get_order(self, order_number: str) -> Order:
        """Получить заказ по номеру."""
        stmt = select(Order).where(Order.order_number == order_number)
        result = await self.db.execute(stmt)
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFoundError(f"Order {order_number} not found")
        return order

    async def get_by_id(self, order_id: uuid.UUID) -> Order:
        """Получить заказ по ID."""
        order = await self.db.get(Order, order_id)
        if not order:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    async def list_user_orders(
        self,
        user_id: uuid.UUID,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Order], int]:
        """Заказы пользователя, новые первыми, и их общее количество."""
        return await self._paginate(Order.user_id == user_id, page=page, limit=limit)

    async def list_orders(
        self,
        page: int = 1,
        limit: int = 20,
        status: str | None = None,
    ) -> tuple[list[Order], int]:
        """
        Все заказы для админки.

        С фильтром status=failed поддержка находит оплаченные заказы,
        которые не удалось выпустить у партнера.
        """
        conditions = [Order.status == status] if status else []
        return await self._paginate(*conditions, page=page, limit=limit)

    async def _paginate(self, *conditions, page: int, limit: int) -> tuple[list[Order], int]:
        count_stmt = select(func.count(Order.id)).where(*conditions)
        total = (await self.db.execute(count_stmt)).scalar_one()

        offset = (page - 1) * limit
        stmt = (
            select(Order)
            .where(*conditions)
            .order_by(Order.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def get_current_transaction(self, order: Order) -> PaymentTransaction | None:
        """Текущая (последняя) транзакция заказа."""
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.order_id == order.id)
            .order_by(PaymentTransaction.created_at.desc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def initiate_payment(self, order_number: str) -> CheckoutResult:
        """
        Перевыставить счет для заказа в статусе pending.

        Если существующий счет уже оплачен, заказ проводится как оплаченный
        и выбрасывается OrderStateError.
        """
        order = await self.get_order(order_number)
        if order.status != OrderStatus.PENDING:
            raise OrderStateError("Order is not in pending status")

        if order.qpay_invoice_id:
            try:
                check = await self.qpay.check_payment(order.qpay_invoice_id)
            except QPayError as e:
                logger.warning(f"Payment check failed for order {order_number}, issuing new invoice: {e}")
            else:
                if check.status == OrderStatus.PAID:
                    logger.info(f"Invoice {order.qpay_invoice_id} already paid, reconciling order {order_number}")
                    await self._record_payment(
                        order,
                        status=OrderStatus.PAID,
                        provider_transaction_id=check.transaction_id or check.invoice_id,
                        payload=check.raw,
                    )
                    await self._apply_paid(order)
                    raise OrderStateError("Payment already completed")

        product = await self.db.get(Product, order.product_id)
        product_name = product.name if product else ""
        description = f"eSIM {product_name} - {product.data_limit if product and product.data_limit else order.order_number}"

        invoice = await self.qpay.create_invoice(order.order_number, description, order.customer_email, order.amount)

        order.qpay_invoice_id = invoice.invoice_id
        await self._record_payment(
            order,
            status="pending",
            provider_transaction_id=invoice.invoice_id,
            payload=invoice.as_payload(),
        )
        await self.db.refresh(order)
        logger.info(f"Invoice re-issued for order {order_number}: {invoice.invoice_id}")
        return CheckoutResult(order=order, invoice=invoice)

    async def process_payment_webhook(self, event: PaymentEvent) -> Order:
        """
        Обработать событие оплаты.

        Повторная доставка безопасна: для заказов в processing/completed/failed/cancelled
        ничего не меняется и выпуск eSIM не запускается повторно.

        Raises:
            OrderNotFoundError: Заказа с таким номером нет (ничего не меняется)
        """
        order = await self.get_order(event.order_number)

        if order.status in OrderStatus.TERMINAL or order.status == OrderStatus.PROCESSING:
            logger.info(
                f"Order {order.order_number} already {order.status}, ignoring webhook "
                f"with status {event.provider_status}"
            )
            return order

        if order.qpay_invoice_id and event.invoice_id != order.qpay_invoice_id:
            logger.warning(
                f"Webhook invoice {event.invoice_id} differs from current invoice "
                f"{order.qpay_invoice_id} of order {order.order_number}"
            )

        await self._record_payment(
            order,
            status=event.status,
            provider_transaction_id=event.transaction_id or event.invoice_id,
            payload=event.as_payload(),
        )

        if event.status == OrderStatus.PAID:
            if Decimal(event.paid_amount) < Decimal(int(order.amount)):
                logger.warning(
                    f"⚠️ Order {order.order_number}: paid_amount {event.paid_amount} is less than "
                    f"invoiced {int(order.amount)}"
                )
            await self._apply_paid(order)
        elif event.status == OrderStatus.FAILED:
            await self._transition(
                order,
                (OrderStatus.PENDING,),
                OrderStatus.FAILED,
                failure_reason=f"QPay payment status {event.provider_status}",
            )
        else:
            logger.info(f"Order {order.order_number}: payment status {event.status}, order status unchanged")

        await self.db.refresh(order)
        return order

    async def provision_order(self, order: Order) -> Order:
        """
        Выпустить eSIM у RoamWiFi для оплаченного заказа.

        Заказ сначала захватывается переходом paid -> processing; если переход
        не удался (заказ уже захвачен или не оплачен), партнер не вызывается.
        Ошибка партнера переводит заказ в failed, повторов нет.
        """
        claimed = await self._transition(order, (OrderStatus.PAID,), OrderStatus.PROCESSING)
        if not claimed:
            logger.info(f"Order {order.order_number} is {order.status}, provisioning skipped")
            return order

        product = await self.db.get(Product, order.product_id)
        if not product:
            await self._transition(
                order, (OrderStatus.PROCESSING,), OrderStatus.FAILED, failure_reason="Product not found"
            )
            return order

        package_id = str(order.provider_price_id) if order.provider_price_id is not None else product.sku_id
        try:
            result = await self.roamwifi.create_order(
                sku_id=product.sku_id,
                package_id=package_id,
                contact_email=order.customer_email,
                contact_phone=order.customer_phone,
                quantity=settings.roamwifi_order_quantity,
            )
        except RoamWiFiError as e:
            logger.error(f"❌ Provisioning failed for paid order {order.order_number}: {e}")
            await self._transition(order, (OrderStatus.PROCESSING,), OrderStatus.FAILED, failure_reason=str(e))
            return order
        except Exception as e:
            logger.error(f"❌ Unexpected provisioning error for order {order.order_number}: {e}", exc_info=True)
            await self._transition(
                order,
                (OrderStatus.PROCESSING,),
                OrderStatus.FAILED,
                failure_reason=f"Unexpected provisioning error: {e}",
            )
            raise

        await self._transition(
            order,
            (OrderStatus.PROCESSING,),
            OrderStatus.COMPLETED,
            roamwifi_order_id=result.order_id,
            esim_data=result.as_delivery_data(),
        )
        logger.info(f"✅ Order {order.order_number} completed, RoamWiFi order {result.order_id}")

        if order.customer_email:
            self._send_delivery_email(result.order_id, order.customer_email)
        return order

    async def _apply_paid(self, order: Order) -> None:
        """pending -> paid и сразу выпуск eSIM."""
        moved = await self._transition(order, (OrderStatus.PENDING,), OrderStatus.PAID)
        if moved:
            logger.info(f"✅ Order {order.order_number} marked as paid")
        await self.provision_order(order)

    async def _select_package(
        self,
        package_price_id: uuid.UUID | None,
        provider_price_id: int | None,
    ) -> PackagePrice:
        if package_price_id is not None:
            package_price = await self.db.get(PackagePrice, package_price_id)
            if not package_price:
                raise OrderValidationError(f"Package price {package_price_id} not found")
            return package_price

        if provider_price_id is not None:
            stmt = select(PackagePrice).where(PackagePrice.provider_price_id == provider_price_id)
            result = await self.db.execute(stmt)
            package_price = result.scalar_one_or_none()
            if not package_price:
                raise OrderValidationError(f"Package price not found for provider_price_id {provider_price_id}")
            return package_price

        raise OrderValidationError("Package selection required")

    async def _transition(self, order: Order, expected: tuple[str, ...], new_status: str, **values) -> bool:
        """
        Условный переход статуса: UPDATE ... WHERE status IN expected.

        Возвращает True, если строку обновил именно этот вызов.
        """
        stmt = (
            sql_update(Order)
            .where(Order.id == order.id, Order.status.in_(expected))
            .values(status=new_status, updated_at=datetime.utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        await self.db.refresh(order)

        if result.rowcount == 1:
            logger.info(f"Order {order.order_number}: {'/'.join(expected)} -> {new_status}")
            return True
        return False

    async def _record_payment(
        self,
        order: Order,
        status: str,
        provider_transaction_id: str,
        payload: dict,
    ) -> PaymentTransaction:
        """Обновить текущую транзакцию заказа или создать, если ее нет."""
        transaction = await self.get_current_transaction(order)
        if transaction:
            transaction.status = status
            transaction.provider_transaction_id = provider_transaction_id
            transaction.raw_payload = payload
        else:
            transaction = PaymentTransaction(
                order_id=order.id,
                provider_transaction_id=provider_transaction_id,
                amount=order.amount,
                status=status,
                payment_method="qpay",
                raw_payload=payload,
            )
            self.db.add(transaction)

        await self.db.commit()
        await self.db.refresh(transaction)
        return transaction

    def _send_delivery_email(self, roamwifi_order_id: str, email: str) -> None:
        """Отправка PDF с eSIM в фоне. Ошибка не влияет на статус заказа."""

        async def send():
            try:
                await self.roamwifi.send_pdf_email(roamwifi_order_id, email)
            except Exception as e:
                logger.error(f"Error sending eSIM e-mail for RoamWiFi order {roamwifi_order_id}: {e}", exc_info=True)

        task = asyncio.create_task(send())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
