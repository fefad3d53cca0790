"""Funding Evaluator verdicts and the reconcile decisions built on them."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from paygate.services.funding.evaluator import FundingEvaluator, calendar_months_between, months_elapsed
from paygate.services.ledger.models import DEPOSIT
from paygate.services.ledger.service import TransactionCreate, synthetic_hash

from conftest import CONSUMER_WALLET, CREATED_AT


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_months_elapsed_counts_calendar_months_plus_current():
    assert calendar_months_between(utc(2024, 3, 1), utc(2024, 1, 15)) == 2
    assert months_elapsed(utc(2024, 3, 1), utc(2024, 1, 15)) == 3
    assert months_elapsed(utc(2024, 1, 31), utc(2024, 1, 15)) == 1
    assert months_elapsed(utc(2025, 1, 1), utc(2024, 12, 31)) == 2


def test_months_elapsed_never_below_one():
    assert months_elapsed(utc(2024, 1, 1), utc(2024, 2, 1)) == 1


def test_naive_timestamps_are_utc():
    assert months_elapsed(datetime(2024, 3, 1), utc(2024, 1, 15)) == 3


async def test_sufficient_balance_activates(activation, chain, clock, notifier, subscriptions, make_subscription):
    subscription = make_subscription()
    clock.now = utc(2024, 3, 1)
    chain.balances[CONSUMER_WALLET.lower()] = Decimal("30")

    verdict = await activation.reconcile(subscription.id)

    assert verdict.sufficient is True
    assert verdict.months_elapsed == 3
    assert verdict.total_due == Decimal("30")
    assert subscriptions.get(subscription.id).active is True
    assert [call["active"] for call in notifier.calls] == [True]


async def test_deposits_reduce_outstanding(activation, chain, clock, ledger, subscriptions, make_subscription):
    subscription = make_subscription()
    clock.now = utc(2024, 3, 1)
    ledger.record(
        TransactionCreate(
            service_id=subscription.id,
            transaction_hash="0xpaid",
            amount=Decimal("20"),
            transaction_type=DEPOSIT,
            block_number=100,
        )
    )
    chain.balances[CONSUMER_WALLET.lower()] = Decimal("10")

    verdict = await activation.reconcile(subscription.id)

    assert verdict.outstanding == Decimal("10")
    assert verdict.sufficient is True
    assert subscriptions.get(subscription.id).active is True


async def test_open_orders_do_not_fund(evaluator, chain, clock, ledger, make_subscription):
    subscription = make_subscription()
    clock.now = utc(2024, 3, 1)
    ledger.record(
        TransactionCreate(
            service_id=subscription.id,
            transaction_hash=synthetic_hash(),
            amount=Decimal("30"),
            transaction_type=DEPOSIT,
        )
    )

    verdict = await evaluator.evaluate(subscription)

    assert verdict.total_deposits == Decimal("0")
    assert verdict.sufficient is False


async def test_unconfirmed_deposits_can_be_excluded(ledger, chain, clock, make_subscription):
    subscription = make_subscription()
    clock.now = utc(2024, 1, 20)
    ledger.record(
        TransactionCreate(
            service_id=subscription.id,
            transaction_hash="0xpending",
            amount=Decimal("10"),
            transaction_type=DEPOSIT,
            block_number=7,
        )
    )
    strict = FundingEvaluator(ledger, chain, grace_period_days=40, count_unconfirmed=False, clock=clock)

    verdict = await strict.evaluate(subscription)

    assert verdict.total_deposits == Decimal("0")
    assert verdict.outstanding == Decimal("10")


async def test_grace_period_protects_active_subscription(
    activation, chain, clock, notifier, subscriptions, make_subscription
):
    subscription = make_subscription()
    subscriptions.set_active(subscription.id, True, reason="seed")
    clock.now = utc(2024, 2, 10)

    verdict = await activation.reconcile(subscription.id)

    assert verdict.sufficient is False
    assert verdict.grace_period is True
    assert verdict.message == "within grace period"
    assert subscriptions.get(subscription.id).active is True
    assert notifier.calls == []


async def test_grace_window_includes_its_last_instant(evaluator, clock, make_subscription):
    subscription = make_subscription()
    clock.now = CREATED_AT + timedelta(days=40)

    verdict = await evaluator.evaluate(subscription)

    assert verdict.grace_period is True


async def test_grace_expiry_deactivates_once(activation, clock, notifier, subscriptions, make_subscription):
    subscription = make_subscription()
    subscriptions.set_active(subscription.id, True, reason="seed")
    clock.now = utc(2024, 3, 1)

    verdict = await activation.reconcile(subscription.id)
    await activation.reconcile(subscription.id)

    assert verdict.grace_period is False
    assert verdict.message == "insufficient funds"
    assert subscriptions.get(subscription.id).active is False
    assert notifier.calls == [
        {"subscription_id": "ext-1", "active": False, "type": None, "transaction": None, "quantity": None}
    ]


async def test_deposit_path_never_deactivates(activation, clock, notifier, subscriptions, make_subscription):
    subscription = make_subscription()
    subscriptions.set_active(subscription.id, True, reason="seed")
    clock.now = utc(2024, 3, 1)

    await activation.reconcile(subscription.id, allow_deactivate=False)

    assert subscriptions.get(subscription.id).active is True
    assert notifier.calls == []


async def test_unavailable_balance_is_no_decision(activation, chain, clock, subscriptions, make_subscription):
    subscription = make_subscription()
    subscriptions.set_active(subscription.id, True, reason="seed")
    clock.now = utc(2024, 6, 1)
    chain.balances[CONSUMER_WALLET.lower()] = None

    assert await activation.reconcile(subscription.id) is None
    assert subscriptions.get(subscription.id).active is True


async def test_missing_price_is_not_evaluable(evaluator, make_subscription):
    subscription = make_subscription(price=None)

    assert await evaluator.evaluate(subscription) is None
