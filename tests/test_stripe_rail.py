"""Card rail: signed webhook ingestion, replay safety and enrollment."""

import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

from paygate.services.stripe_rail.client import StripeRail
from paygate.services.stripe_rail.service import StripeRailService, app_tag
from paygate.services.subscriptions.tokens import EnrollmentClaims

APP = "Request Network"
WEBHOOK_SECRET = "whsec_test"


def sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def delivery(event: dict) -> tuple[bytes, str]:
    payload = json.dumps(event)
    return payload.encode(), sign(payload)


def invoice_event(event_id="evt_invoice", app=APP, paid=True, event_type="invoice.payment_succeeded"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "object": "invoice",
                "id": "in_1",
                "subscription": "sub_1",
                "charge": "ch_1",
                "customer": "cus_1",
                "amount_paid": 1000,
                "paid": paid,
                "lines": {"data": [{"metadata": {"App": app}, "period": {"end": 1735689600}}]},
            }
        },
    }


def charge_event(service_id: str, event_id="evt_charge", app=APP):
    return {
        "id": event_id,
        "type": "charge.succeeded",
        "data": {
            "object": {
                "object": "charge",
                "id": "ch_1",
                "amount": 1000,
                "amount_captured": 1000,
                "customer": "cus_1",
                "metadata": {"App": app, "Service ID": service_id, "Quantity": "3"},
            }
        },
    }


class FakeStripeRail(StripeRail):
    """SDK calls answered from memory; signature checks stay real."""

    def __init__(self, **kwargs) -> None:
        super().__init__(
            secret_key=kwargs.get("secret_key", "sk_test"),
            webhook_secret=kwargs.get("webhook_secret", WEBHOOK_SECRET),
            public_key="pk_test",
        )
        self.created: list[tuple[str, dict]] = []

    async def retrieve_customer(self, customer_id):
        return {"id": customer_id}

    async def create_customer(self, **params):
        self.created.append(("customer", params))
        return {"id": "cus_new", **params}

    async def modify_customer(self, customer_id, **params):
        return {"id": customer_id, **params}

    async def retrieve_plan(self, plan_id):
        return {"id": plan_id}

    async def create_plan(self, **params):
        self.created.append(("plan", params))
        return {"id": "plan_new"}

    async def retrieve_subscription(self, subscription_id):
        return {"id": subscription_id, "canceled_at": None, "items": {"data": [{"id": "si_1"}]}}

    async def create_subscription(self, **params):
        self.created.append(("subscription", params))
        return {"id": "sub_new", "current_period_end": 1735689600, "items": {"data": [{"id": "si_1"}]}}

    async def modify_subscription(self, subscription_id, **params):
        return {"id": subscription_id, "items": {"data": [{"id": "si_1"}]}}

    async def cancel_subscription(self, subscription_id):
        self.created.append(("cancel", {"id": subscription_id}))
        return {"id": subscription_id, "status": "canceled"}

    async def create_payment_intent(self, **params):
        self.created.append(("payment_intent", params))
        return {"id": "pi_1", "client_secret": "pi_1_secret"}


@pytest.fixture
def rail():
    return FakeStripeRail()


@pytest.fixture
def service(rail, subscriptions, enrollments, ledger, activation, notifier, inbox):
    return StripeRailService(
        rail, subscriptions, enrollments, ledger, activation, notifier, inbox, app_name=APP
    )


@pytest.fixture
def enrolled(make_subscription, enrollments):
    subscription = make_subscription()
    enrollments.upsert_stripe(subscription.id, stripe_subscription_id="sub_1", stripe_customer_id="cus_1")
    return subscription


def test_app_tag_prefers_invoice_line_metadata():
    assert app_tag({"lines": {"data": [{"metadata": {"App": "A"}}]}, "metadata": {"App": "B"}}) == "A"
    assert app_tag({"metadata": {"App": "B"}}) == "B"
    assert app_tag({}) is None


async def test_invoice_paid_activates_and_records_deposit(service, enrolled, subscriptions, ledger, notifier):
    result = await service.handle_webhook(*delivery(invoice_event()))

    assert result.status_code == 200
    assert result.outcome == "processed"
    assert subscriptions.get(enrolled.id).active is True
    rows = ledger.for_service(enrolled.id)
    assert [(row.transaction_hash, row.amount, row.confirmed) for row in rows] == [("ch_1", Decimal("10"), True)]
    assert len(notifier.calls) == 1
    assert notifier.calls[0]["type"] == "invoice.payment_succeeded"
    assert notifier.calls[0]["transaction"]["transactionHash"] == "ch_1"


async def test_replayed_delivery_is_acknowledged_without_effects(service, enrolled, ledger, notifier, subscriptions):
    raw_body, signature = delivery(invoice_event())
    await service.handle_webhook(raw_body, signature)

    replay = await service.handle_webhook(raw_body, signature)

    assert replay.status_code == 200
    assert replay.outcome == "duplicate"
    assert len(ledger.for_service(enrolled.id)) == 1
    assert len(notifier.calls) == 1
    assert len(subscriptions.timeline(enrolled.id)) == 1


async def test_paired_charge_does_not_double_count(service, enrolled, ledger, notifier):
    await service.handle_webhook(*delivery(invoice_event()))

    result = await service.handle_webhook(*delivery(charge_event(enrolled.id)))

    assert result.outcome == "processed"
    assert len(ledger.for_service(enrolled.id)) == 1
    assert len(notifier.calls) == 1


async def test_one_off_charge_notifies_with_quantity(service, make_subscription, ledger, notifier, subscriptions):
    subscription = make_subscription()

    await service.handle_webhook(*delivery(charge_event(subscription.id)))

    assert ledger.total_deposits(subscription.id) == Decimal("10")
    assert notifier.calls[0]["type"] == "CHARGE.SUCCEEDED"
    assert notifier.calls[0]["quantity"] == 3
    assert subscriptions.get(subscription.id).active is False


async def test_other_tenant_event_is_ignored(service, enrolled, inbox, notifier, subscriptions):
    result = await service.handle_webhook(*delivery(invoice_event(app="Some Other App")))

    assert result.status_code == 200
    assert result.outcome == "app_mismatch"
    assert subscriptions.get(enrolled.id).active is False
    assert notifier.calls == []
    assert inbox.seen("evt_invoice", "stripe") is False


async def test_bad_signature_is_rejected(service, enrolled, subscriptions):
    raw_body, _ = delivery(invoice_event())

    result = await service.handle_webhook(raw_body, sign(raw_body.decode(), secret="whsec_wrong"))

    assert result.status_code == 400
    assert result.body() == {"data": None, "error": "Stripe webhook validation error"}
    assert subscriptions.get(enrolled.id).active is False


async def test_missing_webhook_secret_asks_for_redelivery(
    subscriptions, enrollments, ledger, activation, notifier, inbox
):
    unconfigured = StripeRailService(
        FakeStripeRail(webhook_secret=""), subscriptions, enrollments, ledger, activation, notifier, inbox,
        app_name=APP,
    )

    result = await unconfigured.handle_webhook(*delivery(invoice_event()))

    assert result.status_code == 503


async def test_unhandled_event_is_acknowledged(service, inbox):
    event = {"id": "evt_other", "type": "customer.created", "data": {"object": {"metadata": {"App": APP}}}}

    result = await service.handle_webhook(*delivery(event))

    assert result.outcome == "unhandled"
    assert inbox.seen("evt_other", "stripe") is True


async def test_unpaid_invoice_does_not_activate(service, enrolled, subscriptions):
    result = await service.handle_webhook(*delivery(invoice_event(paid=False)))

    assert result.outcome == "unhandled"
    assert subscriptions.get(enrolled.id).active is False


async def test_payment_failure_deactivates(service, enrolled, activation, enrollments, notifier, subscriptions):
    await activation.activate(enrolled.id, reason="seed")

    result = await service.handle_webhook(
        *delivery(invoice_event(event_id="evt_failed", event_type="invoice.payment_failed"))
    )

    assert result.outcome == "processed"
    assert subscriptions.get(enrolled.id).active is False
    assert enrollments.stripe_for(enrolled.id).active is False
    assert notifier.calls[-1]["active"] is False
    assert notifier.calls[-1]["type"] == "invoice.payment_failed"


async def test_enroll_creates_customer_plan_and_subscription(service, rail, make_subscription, enrollments, subscriptions):
    subscription = make_subscription()
    claims = EnrollmentClaims(service_id=subscription.id, subscription_id="ext-1", name="Signals", price="10")

    result = await service.enroll(claims, email="buyer@example.com", card_token="tok_visa", last_four="4242")

    assert result["email"] == "buyer@example.com"
    assert result["active"] is True
    assert [kind for kind, _ in rail.created] == ["customer", "plan", "subscription"]
    assert dict(rail.created)["plan"]["amount"] == 1000
    enrollment = enrollments.stripe_for(subscription.id)
    assert enrollment.stripe_subscription_id == "sub_new"
    assert enrollment.last_four == "4242"
    assert subscriptions.get(subscription.id).payment_service == "STRIPE"


async def test_enroll_unknown_service(service):
    claims = EnrollmentClaims(service_id="missing", subscription_id="ext-x", name="x", price="1")

    with pytest.raises(LookupError):
        await service.enroll(claims, email="buyer@example.com")


async def test_payment_intent_prices_from_claims(service, rail):
    claims = EnrollmentClaims(service_id="svc", subscription_id="ext-1", name="Signals", price="12.50")

    intent = await service.create_payment_intent(claims, quantity=2)

    assert intent == {"client_secret": "pi_1_secret", "amount": 2500}
    assert rail.created[-1][1]["metadata"]["Quantity"] == "2"


async def test_cancel_deactivates(service, enrolled, activation, subscriptions, rail):
    await activation.activate(enrolled.id, reason="seed")

    result = await service.cancel(enrolled.id)

    assert result == {"id": enrolled.id, "active": False}
    assert ("cancel", {"id": "sub_1"}) in rail.created
    assert subscriptions.get(enrolled.id).active is False
