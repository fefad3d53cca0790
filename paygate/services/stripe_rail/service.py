"""Card-rail enrollment and webhook ingestion.

Webhook deliveries are verified against the raw body, filtered by the
application tag embedded in Stripe metadata, deduplicated by event id and then
dispatched through an ordered rule table. The inbox row is written only after
every side effect succeeded, so a delivery that fails part way is retried from
scratch by Stripe.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable

import stripe

from paygate.common.config import settings
from paygate.common.logging import bind, logger
from paygate.common.metrics import duplicate_events_skipped_total, webhook_events_total
from paygate.common.rails import RailError, RailNotConfigured, WebhookResult
from paygate.common.tracing import tracer
from paygate.services.ledger.models import DEPOSIT
from paygate.services.ledger.service import TransactionCreate
from paygate.services.subscriptions.models import PAYMENT_SERVICE_STRIPE


INBOX_CONSUMER = "stripe"
CHARGE_SUCCEEDED = "CHARGE.SUCCEEDED"
ENABLED_EVENTS = [
    "charge.succeeded",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
    "customer.subscription.deleted",
    "customer.subscription.updated",
]


@dataclass(frozen=True)
class WebhookRule:
    event_type: str
    predicate: Callable[[dict], bool]
    handler: Callable[[dict, dict], Awaitable[None]]


def app_tag(obj: dict) -> str | None:
    """`metadata.App` of the event object or of its first invoice line."""

    lines = (obj.get("lines") or {}).get("data") or []
    if lines:
        tag = (lines[0].get("metadata") or {}).get("App")
        if tag:
            return tag
    return (obj.get("metadata") or {}).get("App")


def _from_epoch(value) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _cents(value) -> Decimal:
    return (Decimal(int(value or 0)) / 100).quantize(Decimal("0.01"))


def invoice_subscription_id(invoice: dict) -> str | None:
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def invoice_period_end(invoice: dict) -> datetime | None:
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines:
        return _from_epoch((lines[0].get("period") or {}).get("end"))
    return _from_epoch(invoice.get("period_end"))


def subscription_period_end(subscription: dict) -> datetime | None:
    if subscription.get("current_period_end"):
        return _from_epoch(subscription["current_period_end"])
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return _from_epoch(items[0].get("current_period_end"))
    return None


class StripeRailService:
    def __init__(self, rail, subscriptions, enrollments, ledger, activation, notifier, inbox, *, app_name=None) -> None:
        self.rail = rail
        self.subscriptions = subscriptions
        self.enrollments = enrollments
        self.ledger = ledger
        self.activation = activation
        self.notifier = notifier
        self.inbox = inbox
        self.app_name = app_name or settings.app_name
        self.rules: list[WebhookRule] = [
            WebhookRule("charge.succeeded", lambda obj: True, self._on_charge_succeeded),
            WebhookRule(
                "invoice.payment_succeeded", lambda obj: obj.get("paid") is True or obj.get("status") == "paid",
                self._on_invoice_paid,
            ),
            WebhookRule("invoice.payment_failed", lambda obj: True, self._on_funding_lost),
            WebhookRule("customer.subscription.deleted", lambda obj: True, self._on_funding_lost),
            WebhookRule("customer.subscription.updated", lambda obj: True, self._on_subscription_updated),
        ]

    def _metadata(self, claims, email: str | None) -> dict:
        return {
            "App": self.app_name,
            "User ID": claims.consumer_id or "",
            "Service": claims.name,
            "Service ID": claims.service_id,
            "Email": email or claims.email or "",
            "Endpoint Url": claims.url or "",
        }

    def match(self, event_type: str, obj: dict) -> WebhookRule | None:
        for rule in self.rules:
            if rule.event_type == event_type and rule.predicate(obj):
                return rule
        return None

    async def handle_webhook(self, raw_body: bytes, signature: str | None) -> WebhookResult:
        if not self.rail.webhook_secret:
            logger.error("webhook_unconfigured rail=stripe")
            webhook_events_total.labels(
                service=settings.service_name, rail="stripe", event_type="unknown", outcome="unconfigured"
            ).inc()
            return WebhookResult.retryable("stripe webhook secret is not configured")
        try:
            event = self.rail.verify_webhook(raw_body, signature or "")
        except (stripe.SignatureVerificationError, ValueError) as exc:
            logger.warning("webhook_rejected rail=stripe error=%s", exc)
            webhook_events_total.labels(
                service=settings.service_name, rail="stripe", event_type="unknown", outcome="rejected"
            ).inc()
            return WebhookResult.rejected("Stripe webhook validation error")

        event_id = event.get("id") or ""
        event_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}
        unbind = bind(rail="stripe", event_id=event_id)
        try:
            with tracer.start_as_current_span("stripe.webhook") as span:
                span.set_attribute("webhook.event_type", event_type)
                if app_tag(obj) != self.app_name:
                    logger.info("webhook_ignored rail=stripe reason=app_mismatch event_type=%s", event_type)
                    return self._count(event_type, WebhookResult.acknowledged("app_mismatch"))
                if self.inbox.seen(event_id, INBOX_CONSUMER):
                    logger.info("webhook_ignored rail=stripe reason=duplicate event_type=%s", event_type)
                    duplicate_events_skipped_total.labels(service=settings.service_name, source="stripe").inc()
                    return self._count(event_type, WebhookResult.acknowledged("duplicate"))
                rule = self.match(event_type, obj)
                if rule is None:
                    logger.info("webhook_ignored rail=stripe reason=unhandled event_type=%s", event_type)
                    self.inbox.mark(event_id, INBOX_CONSUMER, event_type)
                    return self._count(event_type, WebhookResult.acknowledged("unhandled"))
                await rule.handler(event, obj)
                self.inbox.mark(event_id, INBOX_CONSUMER, event_type)
                logger.info("webhook_processed rail=stripe event_type=%s", event_type)
                return self._count(event_type, WebhookResult.processed())
        finally:
            unbind()

    def _count(self, event_type: str, result: WebhookResult) -> WebhookResult:
        webhook_events_total.labels(
            service=settings.service_name, rail="stripe", event_type=event_type, outcome=result.outcome
        ).inc()
        return result

    def _enrollment_for_event(self, obj: dict):
        if obj.get("object") == "subscription":
            rail_subscription_id = obj.get("id")
        elif obj.get("object") == "invoice":
            rail_subscription_id = invoice_subscription_id(obj)
        else:
            rail_subscription_id = obj.get("subscription")
        if not rail_subscription_id:
            return None
        enrollment = self.enrollments.stripe_by_rail_subscription(rail_subscription_id)
        if enrollment is None:
            logger.warning("webhook_lookup_miss rail=stripe stripe_subscription_id=%s", rail_subscription_id)
        return enrollment

    async def _on_charge_succeeded(self, event: dict, charge: dict) -> None:
        """One-off charge: fund the ledger and tell the validator; no activation change."""

        metadata = charge.get("metadata") or {}
        subscription = self.subscriptions.get(metadata.get("Service ID") or "")
        if subscription is None:
            logger.warning("webhook_lookup_miss rail=stripe charge=%s", charge.get("id"))
            return
        tx, created = self.ledger.record(
            TransactionCreate(
                service_id=subscription.id,
                transaction_hash=charge["id"],
                amount=_cents(charge.get("amount_captured") or charge.get("amount")),
                transaction_type=DEPOSIT,
                from_address=charge.get("customer"),
                to_address=subscription.notify_id,
                confirmed=True,
                meta={
                    "receipt_url": charge.get("receipt_url"),
                    "payment_intent": charge.get("payment_intent"),
                    "invoice": charge.get("invoice"),
                },
            )
        )
        if not created:
            return
        quantity = metadata.get("Quantity")
        await self.notifier.notify(
            subscription.notify_id,
            True,
            type=CHARGE_SUCCEEDED,
            transaction=tx.to_payload(),
            quantity=int(quantity) if quantity else None,
        )

    async def _on_invoice_paid(self, event: dict, invoice: dict) -> None:
        enrollment = self._enrollment_for_event(invoice)
        if enrollment is None:
            return
        async with self.activation.hold(enrollment.subscription_id):
            self.enrollments.patch_stripe(
                enrollment.id,
                current_period_end=invoice_period_end(invoice),
                active=True,
                paid=True,
                first_payment=enrollment.first_payment or datetime.now(timezone.utc),
            )
            subscription = self.subscriptions.get(enrollment.subscription_id)
            if subscription is None:
                logger.warning("webhook_lookup_miss rail=stripe subscription_id=%s", enrollment.subscription_id)
                return
            tx, _ = self.ledger.record(
                TransactionCreate(
                    service_id=subscription.id,
                    # Keyed by the charge so the paired charge.succeeded is a duplicate.
                    transaction_hash=invoice.get("charge") or invoice["id"],
                    amount=_cents(invoice.get("amount_paid")),
                    transaction_type=DEPOSIT,
                    from_address=invoice.get("customer"),
                    to_address=subscription.notify_id,
                    confirmed=True,
                    meta={
                        "invoice": invoice.get("id"),
                        "hosted_invoice_url": invoice.get("hosted_invoice_url"),
                        "invoice_pdf": invoice.get("invoice_pdf"),
                    },
                )
            )
            await self.activation.apply(
                subscription.id,
                True,
                reason="invoice_paid",
                rail=PAYMENT_SERVICE_STRIPE,
                event_ref=event.get("id"),
                notify_type=event.get("type"),
                transaction=tx.to_payload(),
                always_notify=True,
            )

    async def _on_funding_lost(self, event: dict, obj: dict) -> None:
        enrollment = self._enrollment_for_event(obj)
        if enrollment is None:
            return
        async with self.activation.hold(enrollment.subscription_id):
            self.enrollments.patch_stripe(enrollment.id, current_period_end=None, active=False)
            await self.activation.apply(
                enrollment.subscription_id,
                False,
                reason=event.get("type") or "stripe_funding_lost",
                event_ref=event.get("id"),
                notify_type=event.get("type"),
                always_notify=True,
            )

    async def _on_subscription_updated(self, event: dict, obj: dict) -> None:
        enrollment = self._enrollment_for_event(obj)
        if enrollment is None:
            return
        self.enrollments.patch_stripe(enrollment.id, current_period_end=subscription_period_end(obj))

    async def enroll(
        self,
        claims,
        *,
        email: str,
        card_token: str | None = None,
        last_four: str | None = None,
        exp_month: int | None = None,
        exp_year: int | None = None,
    ) -> dict:
        """Get or create the customer, plan and subscription, then activate.

        Returns `{id, email, active}` for the checkout page.
        """

        subscription = self.subscriptions.get(claims.service_id)
        if subscription is None:
            raise LookupError("Service not found.")
        metadata = self._metadata(claims, email)
        customer_params = {"metadata": metadata}
        if card_token:
            customer_params.update(source=card_token, email=email)

        enrollment = self.enrollments.stripe_for(subscription.id)
        if enrollment is None:
            previous = self.enrollments.stripe_by_email(email)
            customer_id = previous.stripe_customer_id if previous else None
        else:
            customer_id = enrollment.stripe_customer_id

        customer = None
        if customer_id:
            customer = await self.rail.retrieve_customer(customer_id)
        if customer and not customer.get("deleted"):
            customer = await self.rail.modify_customer(customer["id"], **customer_params)
        else:
            customer = await self.rail.create_customer(**customer_params)

        plan = None
        if enrollment is not None and enrollment.stripe_plan_id:
            plan = await self.rail.retrieve_plan(enrollment.stripe_plan_id)
        if plan is None:
            plan = await self.rail.create_plan(
                amount=int(Decimal(str(subscription.price or 0)) * 100),
                interval="month",
                currency="usd",
                product={"name": subscription.name or claims.name},
                metadata=metadata,
            )

        rail_subscription = None
        if enrollment is not None and enrollment.stripe_subscription_id:
            rail_subscription = await self.rail.retrieve_subscription(enrollment.stripe_subscription_id)
        if rail_subscription is not None and not rail_subscription.get("canceled_at"):
            rail_subscription = await self.rail.modify_subscription(
                rail_subscription["id"],
                items=[{"id": rail_subscription["items"]["data"][0]["id"], "plan": plan["id"], "quantity": 1}],
                metadata=metadata,
            )
        else:
            rail_subscription = await self.rail.create_subscription(
                customer=customer["id"],
                items=[{"plan": plan["id"], "quantity": 1}],
                metadata=metadata,
            )

        fields = {
            "stripe_customer_id": customer["id"],
            "stripe_plan_id": plan["id"],
            "stripe_subscription_id": rail_subscription["id"],
            "email": email,
            "current_period_end": subscription_period_end(rail_subscription),
            "active": True,
        }
        if card_token:
            fields.update(last_four=last_four, exp_month=exp_month, exp_year=exp_year)
        enrollment = self.enrollments.upsert_stripe(subscription.id, **fields)

        result = await self.activation.activate(
            subscription.id,
            reason="stripe_enrolled",
            rail=PAYMENT_SERVICE_STRIPE,
            event_ref=rail_subscription["id"],
            always_notify=True,
        )
        active = result.subscription.active if result is not None else False
        logger.info("stripe_enrolled subscription_id=%s enrollment_id=%s", subscription.id, enrollment.id)
        return {"id": enrollment.id, "email": enrollment.email, "active": active}

    async def cancel(self, subscription_id: str) -> dict:
        enrollment = self.enrollments.stripe_for(subscription_id)
        if enrollment is None or not enrollment.stripe_subscription_id:
            raise LookupError("Enrollment not found.")
        rail_subscription = await self.rail.retrieve_subscription(enrollment.stripe_subscription_id)
        if not rail_subscription.get("canceled_at"):
            await self.rail.cancel_subscription(enrollment.stripe_subscription_id)
        self.enrollments.patch_stripe(enrollment.id, active=False)
        result = await self.activation.deactivate(
            subscription_id,
            reason="stripe_cancelled",
            event_ref=enrollment.stripe_subscription_id,
            always_notify=True,
        )
        active = result.subscription.active if result is not None else False
        return {"id": subscription_id, "active": active}

    async def create_payment_intent(self, claims, quantity: int = 1) -> dict:
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        amount = int(Decimal(str(claims.price)) * 100) * quantity
        if amount <= 0:
            raise RailError("payment amount must be positive")
        metadata = self._metadata(claims, claims.email)
        metadata["Quantity"] = str(quantity)
        intent = await self.rail.create_payment_intent(
            amount=amount,
            currency="usd",
            automatic_payment_methods={"enabled": True},
            metadata=metadata,
        )
        return {"client_secret": intent["client_secret"], "amount": amount}

    async def rail_status(self) -> dict:
        """Configuration report for the operator setup page."""

        is_https = settings.api_host.startswith("https://")
        status = {
            "isHttps": is_https,
            "stripeSecretKey": bool(self.rail.secret_key),
            "stripePublicKey": bool(self.rail.public_key),
            "enrollmentSecret": bool(settings.payment_enrollment_secret),
            "webhookSecret": bool(self.rail.webhook_secret),
            "webhooks": False,
            "webhookEvents": False,
        }
        if not self.rail.configured:
            return status
        try:
            endpoints = await self.rail.list_webhook_endpoints()
        except (RailNotConfigured, stripe.StripeError) as exc:
            logger.warning("stripe_status_failed error=%s", exc)
            return status
        url = f"{settings.api_host.rstrip('/')}/webhooks"
        endpoint = next((item for item in endpoints.get("data", []) if item.get("url") == url), None)
        if endpoint is not None:
            status["webhooks"] = True
            status["webhookEvents"] = set(ENABLED_EVENTS) <= set(endpoint.get("enabled_events") or [])
        return status
