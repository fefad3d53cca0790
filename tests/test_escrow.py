"""Escrow wallets: encrypted key storage and token withdrawal."""

from decimal import Decimal

import pytest
from cryptography.fernet import Fernet
from eth_account import Account

from paygate.common.rails import RailError, RailNotConfigured
from paygate.services.chain.client import tokens_for
from paygate.services.escrow.service import EscrowKeyring, EscrowService
from paygate.services.ledger.models import WITHDRAWAL
from paygate.services.sweep.service import ReconciliationSweep

from conftest import FakeChain

DESTINATION = "0x3333333333333333333333333333333333333333"


class SendingChain(FakeChain):
    def __init__(self) -> None:
        super().__init__()
        self.tokens = tokens_for("sepolia")
        self.sent: list[tuple[str, str, str, Decimal]] = []

    async def send_tokens(self, private_key, token, to_address, amount) -> str:
        self.sent.append((private_key, token, to_address, amount))
        return f"0x{len(self.sent):064x}"


@pytest.fixture
def keyring():
    return EscrowKeyring(Fernet.generate_key().decode())


@pytest.fixture
def sending_chain():
    return SendingChain()


@pytest.fixture
def escrow(session_factory, keyring, sending_chain, subscriptions, ledger):
    return EscrowService(session_factory, keyring, sending_chain, subscriptions, ledger)


@pytest.fixture
def funded(escrow, make_subscription):
    account = escrow.new_account()
    subscription = make_subscription(consumer_wallet_address=account.address)
    escrow.store(subscription.id, account)
    return subscription, account


def test_private_key_is_stored_encrypted(escrow, keyring, funded):
    subscription, account = funded

    wallet = escrow.wallet_for(subscription.id)

    assert wallet.address == account.address
    assert account.key.hex() not in wallet.encrypted_private_key
    assert Account.from_key(keyring.decrypt(wallet.encrypted_private_key)).address == account.address


def test_missing_encryption_key_refuses_new_wallets(session_factory, sending_chain, subscriptions, ledger):
    escrow = EscrowService(session_factory, EscrowKeyring(""), sending_chain, subscriptions, ledger)

    with pytest.raises(RailNotConfigured):
        escrow.new_account()


def test_wrong_encryption_key_cannot_decrypt(keyring):
    token = keyring.encrypt("0xabc")

    with pytest.raises(RailNotConfigured):
        EscrowKeyring(Fernet.generate_key().decode()).decrypt(token)


async def test_withdraw_signs_with_escrow_key_and_records_row(escrow, funded, sending_chain, ledger):
    subscription, account = funded

    row = await escrow.withdraw(subscription.id, DESTINATION, "2.5")

    private_key, token, to_address, amount = sending_chain.sent[0]
    assert Account.from_key(private_key).address == account.address
    assert (token, to_address, amount) == ("USDC", DESTINATION, Decimal("2.5"))
    stored = ledger.get(row.id)
    assert stored.transaction_type == WITHDRAWAL
    assert stored.confirmed is False
    assert stored.from_address == account.address
    assert stored.token_address == sending_chain.tokens["USDC"].address
    assert ledger.total_deposits(subscription.id) == Decimal(0)


async def test_withdraw_rejects_bad_requests(escrow, funded, sending_chain):
    subscription, _ = funded

    with pytest.raises(RailError):
        await escrow.withdraw(subscription.id, DESTINATION, "0")
    with pytest.raises(RailError):
        await escrow.withdraw(subscription.id, "not-an-address", "1")
    with pytest.raises(RailError):
        await escrow.withdraw(subscription.id, DESTINATION, "1", token="DAI")
    assert sending_chain.sent == []


async def test_withdraw_without_wallet_is_not_found(escrow, make_subscription):
    subscription = make_subscription()

    with pytest.raises(LookupError):
        await escrow.withdraw(subscription.id, DESTINATION, "1")


async def test_confirmation_sweep_confirms_withdrawals(
    escrow, funded, sending_chain, subscriptions, ledger, activation
):
    subscription, _ = funded
    row = await escrow.withdraw(subscription.id, DESTINATION, "1")
    sending_chain.receipts[row.transaction_hash] = True
    sweep = ReconciliationSweep(subscriptions, ledger, sending_chain, activation)

    assert await sweep.confirmation_sweep() == 1

    assert ledger.get(row.id).confirmed is True
