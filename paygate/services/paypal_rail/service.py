"""PayPal orders, subscription approval and webhook ingestion.

Orders are two calls: `create_order` records a synthetic unconfirmed deposit
whose id travels to PayPal as the order `invoice_id`, and `capture_order`
confirms that row and activates the subscription. Webhooks are verified by
PayPal itself against our webhook id, then deduplicated and dispatched
through a rule table like the card rail.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable

import httpx

from paygate.common.config import settings
from paygate.common.logging import bind, logger
from paygate.common.metrics import duplicate_events_skipped_total, webhook_events_total
from paygate.common.rails import RailError, WebhookResult
from paygate.common.tracing import tracer
from paygate.services.ledger.models import DEPOSIT
from paygate.services.ledger.service import TransactionCreate, synthetic_hash
from paygate.services.subscriptions.models import PAYMENT_SERVICE_PAYPAL


INBOX_CONSUMER = "paypal"
CHARGE_SUCCEEDED = "CHARGE.SUCCEEDED"
SUBSCRIPTION_ENDED = (
    "BILLING.SUBSCRIPTION.CANCELLED",
    "BILLING.SUBSCRIPTION.EXPIRED",
    "BILLING.SUBSCRIPTION.SUSPENDED",
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED",
)


@dataclass(frozen=True)
class WebhookRule:
    event_types: tuple[str, ...]
    handler: Callable[[dict, dict], Awaitable[None]]


def _first_capture(order: dict) -> dict:
    units = order.get("purchase_units") or [{}]
    captures = ((units[0].get("payments") or {}).get("captures")) or [{}]
    return captures[0]


class PayPalRailService:
    def __init__(self, client, subscriptions, enrollments, ledger, activation, notifier, inbox) -> None:
        self.client = client
        self.subscriptions = subscriptions
        self.enrollments = enrollments
        self.ledger = ledger
        self.activation = activation
        self.notifier = notifier
        self.inbox = inbox
        self.rules: list[WebhookRule] = [
            WebhookRule(("BILLING.SUBSCRIPTION.ACTIVATED",), self._on_subscription_activated),
            WebhookRule(("PAYMENT.SALE.COMPLETED",), self._on_sale_completed),
            WebhookRule(SUBSCRIPTION_ENDED, self._on_subscription_ended),
        ]

    async def create_order(self, claims) -> tuple[dict, int]:
        subscription = self.subscriptions.get(claims.service_id)
        if subscription is None:
            raise LookupError("Service not found.")
        tx, _ = self.ledger.record(
            TransactionCreate(
                service_id=subscription.id,
                transaction_hash=synthetic_hash(),
                amount=Decimal(str(claims.price)),
                transaction_type=DEPOSIT,
                from_address=claims.consumer_id,
                to_address=subscription.notify_id,
                confirmed=False,
                meta={"rail": "paypal"},
            )
        )
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "description": claims.name,
                    "custom_id": claims.subscription_id,
                    "invoice_id": tx.id,
                    "amount": {"currency_code": "USD", "value": str(claims.price)},
                }
            ],
            "application_context": {"shipping_preference": "NO_SHIPPING"},
        }
        order, status_code = await self.client.create_order(payload)
        if status_code < 400 and order.get("id"):
            self.ledger.backfill_meta(tx.id, {"order_id": order["id"]})
        logger.info("paypal_order_created subscription_id=%s status=%s", subscription.id, status_code)
        return order, status_code

    async def capture_order(self, order_id: str, quantity: int | None = None) -> tuple[dict, int]:
        order, status_code = await self.client.capture_order(order_id)
        capture = _first_capture(order)
        invoice_id = capture.get("invoice_id")
        if order.get("status") != "COMPLETED" or not invoice_id:
            logger.warning("paypal_capture_incomplete order_id=%s status=%s", order_id, order.get("status"))
            return order, status_code

        tx, newly = self.ledger.confirm(invoice_id, meta={"order_id": order_id, "capture": order})
        if tx is None:
            logger.warning("paypal_capture_unknown_invoice order_id=%s invoice_id=%s", order_id, invoice_id)
            return order, status_code
        if newly:
            await self.activation.activate(
                tx.service_id,
                reason="paypal_capture",
                rail=PAYMENT_SERVICE_PAYPAL,
                event_ref=order_id,
                notify_type=CHARGE_SUCCEEDED,
                transaction=tx.to_payload(),
                quantity=quantity,
                always_notify=True,
            )
        return order, status_code

    async def activate(self, claims, paypal_subscription_id: str) -> dict:
        """Buyer approved a PayPal subscription in the checkout page."""

        subscription = self.subscriptions.get(claims.service_id)
        if subscription is None:
            raise LookupError("Service not found.")
        self.enrollments.upsert_paypal(
            subscription.id,
            paypal_subscription_id=paypal_subscription_id,
            email=claims.email,
            first_payment=datetime.now(timezone.utc),
            active=True,
            paid=True,
        )
        result = await self.activation.activate(
            subscription.id,
            reason="paypal_subscription_approved",
            rail=PAYMENT_SERVICE_PAYPAL,
            event_ref=paypal_subscription_id,
            notify_type="invoice.payment_succeeded",
            transaction={"amount": str(claims.price)},
            always_notify=True,
        )
        active = result.subscription.active if result is not None else False
        return {"id": subscription.id, "active": active}

    async def cancel(self, subscription_id: str) -> dict:
        enrollment = self.enrollments.paypal_for(subscription_id)
        if enrollment is None or not enrollment.paypal_subscription_id:
            raise LookupError("Enrollment not found.")
        existing = await self.client.get_subscription(enrollment.paypal_subscription_id)
        if existing.get("status") != "CANCELLED":
            await self.client.cancel_subscription(enrollment.paypal_subscription_id)
        self.enrollments.patch_paypal(enrollment.id, active=False)
        result = await self.activation.deactivate(
            subscription_id,
            reason="paypal_cancelled",
            event_ref=enrollment.paypal_subscription_id,
            always_notify=True,
        )
        active = result.subscription.active if result is not None else False
        return {"id": subscription_id, "active": active}

    async def handle_webhook(self, raw_body: bytes, headers) -> WebhookResult:
        if not self.client.webhook_id:
            logger.error("webhook_unconfigured rail=paypal")
            return self._count("unknown", WebhookResult.retryable("paypal webhook id is not configured"))
        try:
            raw_body.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("webhook_rejected rail=paypal reason=body_not_utf8")
            return self._count("unknown", WebhookResult.rejected("PayPal webhook payload is not UTF-8"))
        try:
            verified = await self.client.verify_webhook_signature(raw_body, headers)
        except (RailError, httpx.HTTPError) as exc:
            logger.error("webhook_verify_unavailable rail=paypal error=%s", exc)
            return self._count("unknown", WebhookResult.retryable("paypal verification unavailable"))
        if not verified:
            logger.warning("webhook_rejected rail=paypal reason=verification_failed")
            return self._count("unknown", WebhookResult.rejected("PayPal webhook verification failed"))
        try:
            event = json.loads(raw_body)
        except ValueError:
            return self._count("unknown", WebhookResult.rejected("PayPal webhook payload is not JSON"))

        event_id = event.get("id") or ""
        event_type = event.get("event_type") or ""
        resource = event.get("resource") or {}
        unbind = bind(rail="paypal", event_id=event_id)
        try:
            with tracer.start_as_current_span("paypal.webhook") as span:
                span.set_attribute("webhook.event_type", event_type)
                if not event_id or not event_type:
                    return self._count(event_type or "unknown", WebhookResult.rejected("PayPal webhook validation error"))
                if self.inbox.seen(event_id, INBOX_CONSUMER):
                    logger.info("webhook_ignored rail=paypal reason=duplicate event_type=%s", event_type)
                    duplicate_events_skipped_total.labels(service=settings.service_name, source="paypal").inc()
                    return self._count(event_type, WebhookResult.acknowledged("duplicate"))
                rule = next((rule for rule in self.rules if event_type in rule.event_types), None)
                if rule is None:
                    logger.info("webhook_ignored rail=paypal reason=unhandled event_type=%s", event_type)
                    self.inbox.mark(event_id, INBOX_CONSUMER, event_type)
                    return self._count(event_type, WebhookResult.acknowledged("unhandled"))
                await rule.handler(event, resource)
                self.inbox.mark(event_id, INBOX_CONSUMER, event_type)
                logger.info("webhook_processed rail=paypal event_type=%s", event_type)
                return self._count(event_type, WebhookResult.processed())
        finally:
            unbind()

    def _count(self, event_type: str, result: WebhookResult) -> WebhookResult:
        webhook_events_total.labels(
            service=settings.service_name, rail="paypal", event_type=event_type, outcome=result.outcome
        ).inc()
        return result

    def _enrollment(self, paypal_subscription_id: str | None):
        if not paypal_subscription_id:
            return None
        enrollment = self.enrollments.paypal_by_rail_subscription(paypal_subscription_id)
        if enrollment is None:
            logger.warning("webhook_lookup_miss rail=paypal paypal_subscription_id=%s", paypal_subscription_id)
        return enrollment

    async def _on_subscription_activated(self, event: dict, resource: dict) -> None:
        enrollment = self._enrollment(resource.get("id"))
        if enrollment is None:
            return
        subscriber = resource.get("subscriber") or {}
        async with self.activation.hold(enrollment.subscription_id):
            self.enrollments.patch_paypal(
                enrollment.id,
                paypal_payer_id=subscriber.get("payer_id"),
                email=subscriber.get("email_address") or enrollment.email,
                paypal_plan_id=resource.get("plan_id") or enrollment.paypal_plan_id,
                first_payment=enrollment.first_payment or datetime.now(timezone.utc),
                paid=True,
                active=True,
            )
            subscription = self.subscriptions.get(enrollment.subscription_id)
            if subscription is None:
                return
            # The first cycle's money arrives as PAYMENT.SALE.COMPLETED; that
            # event writes the ledger row.
            last_payment = ((resource.get("billing_info") or {}).get("last_payment") or {}).get("amount") or {}
            amount = last_payment.get("value") or subscription.price or 0
            await self.activation.apply(
                subscription.id,
                True,
                reason="paypal_subscription_activated",
                rail=PAYMENT_SERVICE_PAYPAL,
                event_ref=event["id"],
                notify_type=event.get("event_type"),
                transaction={"amount": str(amount), "paypalSubscriptionId": resource.get("id")},
                always_notify=True,
            )

    async def _on_sale_completed(self, event: dict, sale: dict) -> None:
        enrollment = self._enrollment(sale.get("billing_agreement_id"))
        if enrollment is None:
            return
        subscription = self.subscriptions.get(enrollment.subscription_id)
        if subscription is None:
            return
        tx, created = self.ledger.record(
            TransactionCreate(
                service_id=subscription.id,
                transaction_hash=sale["id"],
                amount=Decimal(str((sale.get("amount") or {}).get("total") or 0)),
                transaction_type=DEPOSIT,
                from_address=enrollment.paypal_payer_id,
                to_address=subscription.notify_id,
                confirmed=True,
                meta={"paypal_subscription_id": sale.get("billing_agreement_id")},
            )
        )
        if created:
            await self.notifier.notify(
                subscription.notify_id,
                True,
                type=event.get("event_type"),
                transaction=tx.to_payload(),
            )

    async def _on_subscription_ended(self, event: dict, resource: dict) -> None:
        enrollment = self._enrollment(resource.get("id"))
        if enrollment is None:
            return
        async with self.activation.hold(enrollment.subscription_id):
            self.enrollments.patch_paypal(enrollment.id, active=False, current_period_end=None)
            await self.activation.apply(
                enrollment.subscription_id,
                False,
                reason=event.get("event_type") or "paypal_subscription_ended",
                event_ref=event.get("id"),
                notify_type=event.get("event_type"),
                always_notify=True,
            )

    def rail_status(self) -> dict:
        return {
            "isHttps": settings.api_host.startswith("https://"),
            "payPalClientId": bool(self.client.client_id),
            "payPalSecretKey": bool(self.client.client_secret),
            "payPalWebhookId": bool(self.client.webhook_id),
            "enrollmentSecret": bool(settings.payment_enrollment_secret),
        }
