"""Адаптер RoamWiFi: подпись, логин перед каждым вызовом, разбор ответов."""
from decimal import Decimal

import httpx
import pytest

from esim_app.config import settings
from esim_app.services.roamwifi_service import (
    RoamWiFiError,
    RoamWiFiService,
    generate_signature,
    normalize_code,
)


def test_signature_golden_vector():
    params = {"phonenumber": "99112233", "password": "secret"}
    assert generate_signature(params, "ro@mw1f1-bpm-ap1") == "51dece10e169073321edd4d483b41b1d"


def test_signature_ignores_sign_param_and_key_order():
    params = {"token": "abc", "skuId": "158"}
    expected = "659dc8eb0b7ed30fd1482023daa64c98"
    assert generate_signature(params, "ro@mw1f1-bpm-ap1") == expected
    assert generate_signature({"skuId": "158", "token": "abc", "sign": "x"}, "ro@mw1f1-bpm-ap1") == expected


@pytest.mark.parametrize("value, expected", [(0, "0"), ("0", "0"), (200, "200"), ("200", "200"), (0.0, "0"), (None, "")])
def test_normalize_code(value, expected):
    assert normalize_code(value) == expected


def partner(routes: dict, calls: list) -> RoamWiFiService:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=routes[request.url.path])

    return RoamWiFiService(transport=httpx.MockTransport(handler))


LOGIN_OK = {"code": "0", "data": {"token": "abc"}}


async def test_authenticate_signs_login():
    calls = []
    token = await partner({"/api_order/login": LOGIN_OK}, calls).authenticate()

    assert token == "abc"
    params = calls[0].url.params
    assert params["phonenumber"] == "99112233"
    assert params["password"] == "secret"
    assert params["sign"] == "51dece10e169073321edd4d483b41b1d"


async def test_missing_credentials(monkeypatch):
    monkeypatch.setattr(settings, "roamwifi_password", "")
    with pytest.raises(RoamWiFiError, match="credentials"):
        await RoamWiFiService().authenticate()


async def test_get_packages_parses_loose_json():
    calls = []
    routes = {
        "/api_order/login": LOGIN_OK,
        "/api_esim/getPackages": {
            "code": 200,
            "data": {
                "skuid": 158,
                "display": "Mongolia",
                "supportCountry": ["MN"],
                "esimPackageDtoList": [
                    {
                        "priceid": "5001",
                        "apiCode": "MN-1GB-7D",
                        "flows": "1",
                        "unit": "GB",
                        "days": "7",
                        "price": "10.5",
                        "showName": "1GB 7 days",
                    },
                    {"apiCode": "broken"},
                ],
            },
        },
    }
    service = partner(routes, calls)

    detailed = await service.get_packages("158")

    assert detailed.sku_id == "158"
    assert detailed.support_country == ["MN"]
    assert len(detailed.packages) == 1
    package = detailed.packages[0]
    assert package.price_id == 5001
    assert package.days == 7
    assert package.price == Decimal("10.5")
    assert package.data_limit == "1GB"

    # Логин перед каждой операцией, токен передается явно
    assert [c.url.path for c in calls] == ["/api_order/login", "/api_esim/getPackages"]
    params = calls[1].url.params
    assert params["token"] == "abc"
    assert params["sign"] == "659dc8eb0b7ed30fd1482023daa64c98"


async def test_each_operation_authenticates_again():
    calls = []
    routes = {
        "/api_order/login": LOGIN_OK,
        "/api_esim/getSkus": {"code": "0", "data": [{"skuid": 158, "display": "Mongolia", "countryCode": "MN"}]},
    }
    service = partner(routes, calls)

    await service.list_skus()
    skus = await service.list_skus()

    assert skus[0].sku_id == "158"
    assert [c.url.path for c in calls].count("/api_order/login") == 2


async def test_create_order_parses_alternate_field_names():
    calls = []
    routes = {
        "/api_order/login": LOGIN_OK,
        "/api_order/createOrder": {
            "code": "0",
            "data": {"orderId": 987654, "status": "success", "qrcode": "LPA:1$x$y", "activation_code": "y"},
        },
    }
    result = await partner(routes, calls).create_order("158", "5001", "a@b.mn")

    assert result.order_id == "987654"
    assert result.qr_code == "LPA:1$x$y"
    assert result.as_delivery_data()["roamwifi_order_id"] == "987654"
    params = calls[1].url.params
    # Пустой телефон не отправляется и не подписывается
    assert "customer_phone" not in params
    assert params["package_id"] == "5001"
    assert params["quantity"] == "1"


async def test_partner_error_message_preserved():
    routes = {
        "/api_order/login": LOGIN_OK,
        "/api_order/createOrder": {"code": "1001", "message": "Insufficient balance"},
    }
    with pytest.raises(RoamWiFiError) as exc_info:
        await partner(routes, []).create_order("158", "5001", "a@b.mn", "99001122")
    assert str(exc_info.value) == "RoamWiFi API error: Insufficient balance"


async def test_timeout_is_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    service = RoamWiFiService(transport=httpx.MockTransport(handler))
    with pytest.raises(RoamWiFiError, match="timeout"):
        await service.authenticate()
