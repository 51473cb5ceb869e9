"""Модели базы данных."""
from esim_app.models.product import Product
from esim_app.models.package_price import PackagePrice
from esim_app.models.order import Order, OrderStatus
from esim_app.models.payment import PaymentTransaction
from esim_app.models.currency_rate import CurrencyRate

__all__ = [
    "Product",
    "PackagePrice",
    "Order",
    "OrderStatus",
    "PaymentTransaction",
    "CurrencyRate",
]
