"""Activation Service: idempotent transitions under the per-subscription lock."""

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from paygate.services.subscriptions.models import PAYMENT_SERVICE_PAYPAL, PAYMENT_SERVICE_STRIPE

from conftest import CONSUMER_WALLET


async def test_activation_is_idempotent(activation, notifier, subscriptions, make_subscription):
    subscription = make_subscription()

    first = await activation.activate(subscription.id, reason="invoice_paid", rail=PAYMENT_SERVICE_STRIPE)
    second = await activation.activate(subscription.id, reason="invoice_paid", rail=PAYMENT_SERVICE_STRIPE)

    assert first.changed is True
    assert second.changed is False
    stored = subscriptions.get(subscription.id)
    assert stored.active is True
    assert stored.payment_service == PAYMENT_SERVICE_STRIPE
    assert stored.state_version == 1
    assert len(subscriptions.timeline(subscription.id)) == 1
    assert len(notifier.calls) == 1


async def test_receipts_notify_even_without_a_flip(activation, notifier, make_subscription):
    subscription = make_subscription()
    await activation.activate(subscription.id, reason="seed")

    result = await activation.activate(
        subscription.id,
        reason="invoice_paid",
        rail=PAYMENT_SERVICE_PAYPAL,
        notify_type="CHARGE.SUCCEEDED",
        transaction={"amount": "10"},
        quantity=2,
        always_notify=True,
    )

    assert result.changed is False
    assert notifier.calls[-1] == {
        "subscription_id": "ext-1",
        "active": True,
        "type": "CHARGE.SUCCEEDED",
        "transaction": {"amount": "10"},
        "quantity": 2,
    }


async def test_deactivate_records_timeline(activation, subscriptions, make_subscription):
    subscription = make_subscription()
    await activation.activate(subscription.id, reason="seed", event_ref="evt_1")
    await activation.deactivate(subscription.id, reason="invoice.payment_failed", event_ref="evt_2")

    timeline = subscriptions.timeline(subscription.id)
    assert [(row.from_active, row.to_active, row.event_ref) for row in timeline] == [
        (False, True, "evt_1"),
        (True, False, "evt_2"),
    ]


async def test_unknown_subscription_is_skipped(activation, notifier):
    assert await activation.activate("missing", reason="seed") is None
    assert notifier.calls == []


async def test_unknown_rail_is_rejected(activation, make_subscription):
    subscription = make_subscription()

    with pytest.raises(ValueError):
        await activation.activate(subscription.id, reason="seed", rail="VENMO")


async def test_concurrent_reconciles_flip_once(activation, chain, clock, notifier, subscriptions, make_subscription):
    subscription = make_subscription()
    clock.now = datetime(2024, 1, 20, tzinfo=timezone.utc)
    chain.balances[CONSUMER_WALLET.lower()] = Decimal("100")

    await asyncio.gather(*(activation.reconcile(subscription.id) for _ in range(5)))

    assert subscriptions.get(subscription.id).state_version == 1
    assert len(subscriptions.timeline(subscription.id)) == 1
    assert len(notifier.calls) == 1


async def test_hold_serializes_writers(activation, make_subscription):
    subscription = make_subscription()
    order: list[str] = []

    async def writer(name: str):
        async with activation.hold(subscription.id):
            order.append(f"{name}:start")
            await asyncio.sleep(0)
            order.append(f"{name}:end")

    await asyncio.gather(writer("a"), writer("b"))

    assert order == ["a:start", "a:end", "b:start", "b:end"]
