"""Gateway adapter against a mocked HTTP transport."""

import json

import httpx
import pytest

from conftest import sign, sign_body
from learnpay.common.errors import GatewayUnavailable, InvalidAmount
from learnpay.services.gateway_adapter.service import RazorpayGateway


def make_gateway(handler, **overrides):
    options = {"key_id": "rzp_test_key", "key_secret": "test_secret", "webhook_secret": "whsec_test"}
    options.update(overrides)
    return RazorpayGateway(transport=httpx.MockTransport(handler), **options)


@pytest.mark.asyncio
async def test_create_remote_order_posts_minor_units():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization", "")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_abc", "amount": 1000, "currency": "INR"})

    order = await make_gateway(handler).create_remote_order(1000, "inr", idempotency_key="obl-1234-abcd")

    assert (order.remote_order_id, order.amount_minor, order.currency) == ("order_abc", 1000, "INR")
    assert seen["path"].endswith("/orders")
    assert seen["auth"].startswith("Basic ")
    assert seen["body"]["amount"] == 1000
    assert seen["body"]["receipt"] == "obl-1234-abcd"


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -1])
async def test_non_positive_amount_never_calls_gateway(amount):
    def handler(request):
        raise AssertionError("gateway must not be called")

    with pytest.raises(InvalidAmount):
        await make_gateway(handler).create_remote_order(amount, "INR", idempotency_key="k")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "handler",
    [
        lambda request: httpx.Response(502, text="bad gateway"),
        lambda request: httpx.Response(200, json={"unexpected": True}),
        lambda request: httpx.Response(200, text="<html>"),
    ],
)
async def test_error_status_or_malformed_body_is_unavailable(handler):
    with pytest.raises(GatewayUnavailable):
        await make_gateway(handler).create_remote_order(500, "INR", idempotency_key="k")


@pytest.mark.asyncio
async def test_timeout_is_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GatewayUnavailable):
        await make_gateway(handler).create_remote_order(500, "INR", idempotency_key="k")


@pytest.mark.asyncio
async def test_missing_credentials_is_unavailable():
    def handler(request):
        raise AssertionError("gateway must not be called")

    with pytest.raises(GatewayUnavailable):
        await make_gateway(handler, key_secret="").create_remote_order(500, "INR", idempotency_key="k")


def test_verify_signature():
    gateway = make_gateway(lambda request: httpx.Response(200))
    good = sign("order_1", "pay_1")

    assert gateway.verify_signature("order_1", "pay_1", good) is True
    assert gateway.verify_signature("order_1", "pay_2", good) is False
    assert gateway.verify_signature("order_1", "pay_1", good.upper()) is False


@pytest.mark.parametrize("signature", ["", None, 42, "ünïcode", "short"])
def test_malformed_signature_returns_false(signature):
    gateway = make_gateway(lambda request: httpx.Response(200))

    assert gateway.verify_signature("order_1", "pay_1", signature) is False


def test_verify_webhook_signature():
    gateway = make_gateway(lambda request: httpx.Response(200))
    body = b'{"event":"payment.captured"}'

    assert gateway.verify_webhook_signature(body, sign_body(body)) is True
    assert gateway.verify_webhook_signature(body + b" ", sign_body(body)) is False
    assert make_gateway(lambda request: httpx.Response(200), webhook_secret="").verify_webhook_signature(
        body, sign_body(body)
    ) is False
