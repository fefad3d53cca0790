"""Ledger Store: one row per real-world event and deposit aggregation."""

from decimal import Decimal

import pytest

from paygate.services.ledger.models import DEPOSIT, WITHDRAWAL
from paygate.services.ledger.service import TransactionCreate, synthetic_hash


def _deposit(service_id, transaction_hash, amount="10", **overrides):
    return TransactionCreate(
        service_id=service_id,
        transaction_hash=transaction_hash,
        amount=Decimal(amount),
        transaction_type=DEPOSIT,
        **overrides,
    )


def test_record_is_idempotent(ledger, make_subscription):
    subscription = make_subscription()

    first, created = ledger.record(_deposit(subscription.id, "0xabc", log_index=3, block_number=10))
    again, created_again = ledger.record(_deposit(subscription.id, "0xabc", log_index=3, block_number=10))

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert len(ledger.for_service(subscription.id)) == 1


def test_two_logs_in_one_transaction_are_two_rows(ledger, make_subscription):
    subscription = make_subscription()

    ledger.record(_deposit(subscription.id, "0xabc", log_index=0, block_number=10))
    ledger.record(_deposit(subscription.id, "0xabc", log_index=1, block_number=10))

    assert len(ledger.find_by_hash("0xabc")) == 2
    assert ledger.total_deposits(subscription.id) == Decimal("20")


def test_total_deposits_ignores_withdrawals_and_open_orders(ledger, make_subscription):
    subscription = make_subscription()
    ledger.record(_deposit(subscription.id, "0xchain", amount="15", block_number=5))
    ledger.record(_deposit(subscription.id, "ch_1", amount="10", confirmed=True))
    ledger.record(_deposit(subscription.id, synthetic_hash(), amount="99"))
    ledger.record(
        TransactionCreate(
            service_id=subscription.id,
            transaction_hash="0xout",
            amount=Decimal("7"),
            transaction_type=WITHDRAWAL,
            confirmed=True,
        )
    )

    assert ledger.total_deposits(subscription.id) == Decimal("25")
    assert ledger.total_deposits(subscription.id, include_unconfirmed=False) == Decimal("10")


def test_confirm_reports_first_confirmation_only(ledger, make_subscription):
    subscription = make_subscription()
    row, _ = ledger.record(_deposit(subscription.id, synthetic_hash()))

    confirmed, newly = ledger.confirm(row.id, meta={"order_id": "ORDER-1"})
    _, newly_again = ledger.confirm(row.id)

    assert newly is True
    assert newly_again is False
    assert confirmed.confirmed is True
    assert confirmed.meta == {"order_id": "ORDER-1"}
    assert ledger.confirm("missing") == (None, False)


def test_unconfirmed_lists_only_chain_rows(ledger, make_subscription):
    subscription = make_subscription()
    chain_row, _ = ledger.record(_deposit(subscription.id, "0xpending", block_number=42))
    ledger.record(_deposit(subscription.id, synthetic_hash()))
    ledger.record(_deposit(subscription.id, "ch_2", confirmed=True))

    assert [row.id for row in ledger.unconfirmed()] == [chain_row.id]


def test_transaction_create_validates():
    with pytest.raises(ValueError):
        TransactionCreate(service_id="s", transaction_hash="0x1", amount=Decimal(1), transaction_type="refund")
    with pytest.raises(ValueError):
        TransactionCreate(service_id="s", transaction_hash="", amount=Decimal(1))


def test_unconfirmed_puts_least_checked_rows_first(ledger, make_subscription):
    subscription = make_subscription()
    older, _ = ledger.record(_deposit(subscription.id, "0xolder", block_number=1))
    newer, _ = ledger.record(_deposit(subscription.id, "0xnewer", block_number=2))
    withdrawal, _ = ledger.record(
        TransactionCreate(
            service_id=subscription.id, transaction_hash="0xout", amount=Decimal("1"), transaction_type=WITHDRAWAL
        )
    )

    ledger.note_receipt_miss([older.id])

    assert [row.id for row in ledger.unconfirmed()][-1] == older.id
    assert older.id not in [row.id for row in ledger.unconfirmed(max_checks=1)]
    assert withdrawal.id in [row.id for row in ledger.unconfirmed()]
    assert newer.id in [row.id for row in ledger.unconfirmed(max_checks=1)]
