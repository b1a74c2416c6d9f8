import json
import re
from datetime import datetime

import httpx
import pytest

from payfirst.errors import GatewayRejected, GatewayUnavailable
from payfirst.services.duitku_gateway import DuitkuGateway, TransactionOrder, generate_order_id
from payfirst.services.signatures import GatewayOperation, sign

from .conftest import AMOUNT, API_KEY, MERCHANT_CODE


def _order(merchant_order_id="PAYF-1700000000000-AB12CD"):
    return TransactionOrder(
        merchantOrderId=merchant_order_id,
        paymentAmount=AMOUNT,
        paymentMethod="BC",
        productDetails="Python Dasar - Online Course",
        customerVaName="Budi Santoso",
        email="budi@example.com",
        returnUrl="https://lms.example.com/pembayaran/success",
        callbackUrl="https://lms.example.com/webhooks/duitku",
    )


def test_generate_order_id_format():
    order_id = generate_order_id("PAYF")
    assert re.fullmatch(r"PAYF-\d{13}-[A-Z0-9]{6}", order_id)
    assert generate_order_id() != generate_order_id()


async def test_list_payment_methods_signs_with_sha256(settings, duitku):
    gateway = DuitkuGateway(
        settings,
        transport=httpx.MockTransport(duitku.handler),
        clock=lambda: datetime(2024, 1, 1, 0, 0, 0),
    )

    methods = await gateway.list_payment_methods(AMOUNT)

    body = json.loads(duitku.requests[0].content)
    assert body["merchantcode"] == MERCHANT_CODE
    assert body["amount"] == "299000"
    assert body["datetime"] == "2024-01-01 00:00:00"
    assert body["signature"] == sign(
        GatewayOperation.PAYMENT_METHODS,
        {"merchantCode": MERCHANT_CODE, "amount": AMOUNT, "datetime": "2024-01-01 00:00:00"},
        API_KEY,
    )
    assert [m.code for m in methods] == ["BC", "SP"]
    assert methods[0].displayName == "BCA Virtual Account"
    assert methods[0].fee == 4000


async def test_list_payment_methods_rejected(gateway, duitku):
    duitku.methods_response = (200, {"responseCode": "01", "responseMessage": "Invalid amount"})
    with pytest.raises(GatewayRejected):
        await gateway.list_payment_methods(AMOUNT)


async def test_create_transaction_request(gateway, duitku):
    result = await gateway.create_transaction(_order())

    request = duitku.requests[0]
    assert request.url.path.endswith("/v2/inquiry")
    body = json.loads(request.content)
    assert body["merchantCode"] == MERCHANT_CODE
    assert body["paymentAmount"] == AMOUNT
    assert body["callbackUrl"] == "https://lms.example.com/webhooks/duitku"
    assert body["signature"] == sign(
        GatewayOperation.CREATE_TRANSACTION,
        {"merchantCode": MERCHANT_CODE, "merchantOrderId": "PAYF-1700000000000-AB12CD", "paymentAmount": AMOUNT},
        API_KEY,
    )
    assert result.succeeded
    assert result.reference == "DS2421924ABCDEF"
    assert result.vaNumber == "7007014001234567"


async def test_create_transaction_non_success_code(gateway, duitku):
    duitku.inquiry_response = (200, {"statusCode": "-100", "statusMessage": "Payment channel not available"})
    result = await gateway.create_transaction(_order())
    assert not result.succeeded
    assert result.statusMessage == "Payment channel not available"


@pytest.mark.parametrize("status_code", [400, 401, 500, 503])
async def test_non_2xx_is_gateway_unavailable(gateway, duitku, status_code):
    duitku.inquiry_response = (status_code, {"Message": "Minimum Payment 10000 IDR"})
    with pytest.raises(GatewayUnavailable):
        await gateway.create_transaction(_order())


async def test_transport_error_is_gateway_unavailable(gateway, duitku):
    duitku.error = httpx.ConnectTimeout("timed out")
    with pytest.raises(GatewayUnavailable):
        await gateway.query_status("PAYF-1700000000000-AB12CD")


async def test_non_json_body_is_gateway_unavailable(settings):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
    gateway = DuitkuGateway(settings, transport=transport)
    with pytest.raises(GatewayUnavailable):
        await gateway.query_status("PAYF-1700000000000-AB12CD")


async def test_query_status(gateway, duitku):
    duitku.status_response = (200, {
        "merchantOrderId": "PAYF-1700000000000-AB12CD",
        "reference": "DS2421924ABCDEF",
        "amount": "299000.00",
        "statusCode": "00",
        "statusMessage": "SUCCESS",
    })

    status = await gateway.query_status("PAYF-1700000000000-AB12CD")

    body = json.loads(duitku.requests[0].content)
    assert body["signature"] == sign(
        GatewayOperation.TRANSACTION_STATUS,
        {"merchantCode": MERCHANT_CODE, "merchantOrderId": "PAYF-1700000000000-AB12CD"},
        API_KEY,
    )
    assert status.statusCode == "00"
    assert status.amount == AMOUNT
    assert status.reference == "DS2421924ABCDEF"
