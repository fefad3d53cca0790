"""Signed validator status calls."""

import json

import httpx

from paygate.common.signing import verify_signature
from paygate.services.notifier.client import ValidatorNotifier


def make_notifier(handler) -> ValidatorNotifier:
    return ValidatorNotifier(
        "https://validator.test",
        "key-1",
        "secret-1",
        key_header="x-taoshi-validator-request-key",
        timeout_seconds=1,
        transport=httpx.MockTransport(handler),
    )


async def test_notify_sends_signed_put():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    notifier = make_notifier(handler)

    sent = await notifier.notify("ext-1", True, type="CHARGE.SUCCEEDED", transaction={"amount": "10"}, quantity=2)

    assert sent is True
    request = seen[0]
    body = request.content.decode()
    assert request.method == "PUT"
    assert request.url.path == "/api/status"
    assert json.loads(body) == {
        "subscriptionId": "ext-1",
        "active": True,
        "type": "CHARGE.SUCCEEDED",
        "transaction": {"amount": "10"},
        "quantity": 2,
    }
    signature = request.headers["authorization"].removeprefix("Bearer ")
    assert request.headers["x-taoshi-validator-request-key"] == "key-1"
    assert verify_signature(
        signature, "PUT", "/api/status", body, "key-1", "secret-1", request.headers["x-taoshi-nonce"]
    )


async def test_notify_omits_unset_fields():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(204)

    await make_notifier(handler).notify("ext-1", False)

    assert bodies == [{"subscriptionId": "ext-1", "active": False}]


async def test_rejected_notification_returns_false():
    notifier = make_notifier(lambda request: httpx.Response(500, text="boom"))

    assert await notifier.notify("ext-1", True) is False


async def test_transport_failure_returns_false():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    assert await make_notifier(handler).notify("ext-1", True) is False


async def test_register_posts_public_url():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201)

    assert await make_notifier(handler).register("https://gateway.test") is True
    assert seen[0].url.path == "/api/register"
    assert json.loads(seen[0].content) == {"url": "https://gateway.test"}
