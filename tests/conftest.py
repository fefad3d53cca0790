"""Shared fixtures: in-memory database, fake chain, recording notifier."""

import asyncio
import os
from datetime import datetime, timezone
from decimal import Decimal

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("OTEL_SDK_DISABLED", "true")
os.environ.setdefault("VALIDATOR_API_KEY", "validator-key")
os.environ.setdefault("VALIDATOR_API_SECRET", "validator-secret")
os.environ.setdefault("PAYMENT_ENROLLMENT_SECRET", "enrollment-secret")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from paygate.common.db import Base
from paygate.common.locks import LocalSubscriptionLocks
from paygate.services.activation.service import ActivationService
from paygate.services.chain.client import BLOCK, TRANSFER
from paygate.services.escrow import models as escrow_models  # noqa: F401
from paygate.services.funding.evaluator import FundingEvaluator
from paygate.services.ledger import models as ledger_models  # noqa: F401
from paygate.services.ledger.service import LedgerStore
from paygate.services.subscriptions import models as subscription_models  # noqa: F401
from paygate.services.subscriptions.service import EnrollmentStore, SubscriptionStore, WebhookInbox

CREATED_AT = datetime(2024, 1, 15, tzinfo=timezone.utc)
CONSUMER_WALLET = "0x1111111111111111111111111111111111111111"
VALIDATOR_WALLET = "0x2222222222222222222222222222222222222222"


class FakeChain:
    """Balances and receipts keyed by wallet / hash; listener registry like `ChainClient`."""

    def __init__(self) -> None:
        self.balances: dict[str, Decimal | None] = {}
        self.receipts: dict[str, bool | None] = {}
        self.verify_calls: list[str] = []
        self.balance_calls = 0
        self.tokens = {"USDC": object()}
        self.listeners = {TRANSFER: [], BLOCK: []}
        self.watched = None

    async def get_token_balance(self, token: str, wallet_address: str) -> Decimal | None:
        self.balance_calls += 1
        await asyncio.sleep(0)
        return self.balances.get(wallet_address.lower(), Decimal(0))

    async def verify_transaction(self, transaction_hash: str) -> bool | None:
        self.verify_calls.append(transaction_hash)
        return self.receipts.get(transaction_hash, False)

    def on(self, event, handler) -> None:
        self.listeners[event].append(handler)

    def watch(self, provider) -> None:
        self.watched = provider

    def remove_all_listeners(self, event) -> None:
        self.listeners[event] = []

    def listener_count(self, event) -> int:
        return len(self.listeners[event])


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def notify(self, subscription_id, active, *, type=None, transaction=None, quantity=None) -> bool:
        self.calls.append(
            {
                "subscription_id": subscription_id,
                "active": active,
                "type": type,
                "transaction": transaction,
                "quantity": quantity,
            }
        )
        return True


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return LedgerStore(session_factory)


@pytest.fixture
def subscriptions(session_factory):
    return SubscriptionStore(session_factory)


@pytest.fixture
def enrollments(session_factory):
    return EnrollmentStore(session_factory)


@pytest.fixture
def inbox(session_factory):
    return WebhookInbox(session_factory)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return Clock(datetime(2024, 2, 1, tzinfo=timezone.utc))


@pytest.fixture
def evaluator(ledger, chain, clock):
    return FundingEvaluator(ledger, chain, grace_period_days=40, count_unconfirmed=True, clock=clock)


@pytest.fixture
def activation(subscriptions, evaluator, notifier):
    return ActivationService(subscriptions, evaluator, notifier, LocalSubscriptionLocks())


@pytest.fixture
def make_subscription(subscriptions):
    def factory(**overrides):
        fields = {
            "name": "Signals",
            "price": Decimal("10"),
            "external_subscription_id": "ext-1",
            "consumer_wallet_address": CONSUMER_WALLET,
            "validator_wallet_address": VALIDATOR_WALLET,
            "hotkey": "5Hotkey",
            "created_at": CREATED_AT,
        }
        fields.update(overrides)
        return subscriptions.create(**fields)

    return factory
