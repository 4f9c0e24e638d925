import asyncio
import json

import httpx
import pytest

from errors import GatewayError, TransientError
from gateway import PaymentGateway

BASE = "http://backend.test/api"


class MemoryTokenStore:
    def __init__(self, token=None):
        self.token = token

    def get(self):
        return self.token

    def clear(self):
        self.token = None


def gateway_for(handler, **kwargs):
    return PaymentGateway(base_url=BASE, transport=httpx.MockTransport(handler), **kwargs)


def test_initialize_returns_tx_ref():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "success", "data": {"tx_ref": "TX123"}})

    resp = asyncio.run(gateway_for(handler).initialize({"amount": 2500, "paymentMethod": "mpesa"}))

    assert resp.data.tx_ref == "TX123"
    assert resp.data.checkout_url is None
    assert seen["url"] == f"{BASE}/payments/initialize"
    assert seen["body"]["paymentMethod"] == "mpesa"


def test_initialize_rejection_is_gateway_error():
    def handler(request):
        return httpx.Response(400, json={"message": "Valid amount is required"})

    with pytest.raises(GatewayError) as exc:
        asyncio.run(gateway_for(handler).initialize({"amount": 0}))
    assert exc.value.status_code == 400
    assert str(exc.value) == "Valid amount is required"


def test_initialize_error_status_in_body_is_gateway_error():
    def handler(request):
        return httpx.Response(200, json={"status": "error", "message": "STK push rejected"})

    with pytest.raises(GatewayError):
        asyncio.run(gateway_for(handler).initialize({"amount": 2500}))


def test_verify_parses_nested_status():
    def handler(request):
        assert request.url.path == "/api/payments/verify/TX123"
        return httpx.Response(200, json={
            "status": "success",
            "data": {"status": "success", "amount": 2500, "mpesaReceiptNumber": "QEI2ABCDEF", "txRef": "TX123"},
        })

    resp = asyncio.run(gateway_for(handler).verify("TX123"))

    assert resp.status == "success"
    assert resp.data.status == "success"
    assert resp.data.mpesaReceiptNumber == "QEI2ABCDEF"


@pytest.mark.parametrize("response", [
    httpx.Response(404, json={"message": "Payment not found"}),
    httpx.Response(500, text="<html>oops</html>"),
    httpx.Response(200, text="not json"),
    httpx.Response(200, json=["unexpected"]),
])
def test_verify_failures_are_transient(response):
    def handler(request):
        return response

    with pytest.raises(TransientError):
        asyncio.run(gateway_for(handler).verify("TX123"))


def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientError):
        asyncio.run(gateway_for(handler).verify("TX123"))


def test_verify_registration_requires_success_status():
    def handler(request):
        return httpx.Response(400, json={"message": "Payment amount does not match selected plan"})

    with pytest.raises(GatewayError) as exc:
        asyncio.run(gateway_for(handler).verify_registration({"txRef": "TX123", "email": "a@b.et", "planName": "Growth"}))
    assert "does not match" in str(exc.value)


def test_bearer_token_sent_and_dropped_on_unauthorized():
    store = MemoryTokenStore("header.payload.sig")
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(401, json={"message": "Authentication required"})

    with pytest.raises(GatewayError):
        asyncio.run(gateway_for(handler, token_store=store).initialize({"amount": 2500}))

    assert seen["auth"] == "Bearer header.payload.sig"
    assert store.token is None
