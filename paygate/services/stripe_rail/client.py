"""Narrow wrapper around the Stripe SDK.

SDK calls are blocking, so each one runs in a worker thread to keep the event
loop free. The secret key is passed per call instead of through the global
`stripe.api_key`.
"""

import asyncio
import json

import stripe

from paygate.common.config import settings
from paygate.common.rails import RailNotConfigured


SIGNATURE_TOLERANCE_SECONDS = 300


class StripeRail:
    def __init__(
        self,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        public_key: str | None = None,
    ) -> None:
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        self.public_key = public_key if public_key is not None else settings.stripe_public_key

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def verify_webhook(self, raw_body: bytes, signature: str) -> dict:
        """Check the `Stripe-Signature` header and return the parsed event.

        Raises `stripe.SignatureVerificationError` for a bad signature and
        `ValueError` for an unparseable body.
        """

        if not self.webhook_secret:
            raise RailNotConfigured("STRIPE_WEBHOOK_SECRET is not set")
        payload = raw_body.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            payload, signature, self.webhook_secret, SIGNATURE_TOLERANCE_SECONDS
        )
        event = json.loads(payload)
        if not isinstance(event, dict) or "type" not in event:
            raise ValueError("webhook payload is not a Stripe event")
        return event

    async def _call(self, fn, *args, **params):
        if not self.secret_key:
            raise RailNotConfigured("STRIPE_SECRET_KEY is not set")
        return await asyncio.to_thread(fn, *args, api_key=self.secret_key, **params)

    async def retrieve_customer(self, customer_id: str):
        return await self._call(stripe.Customer.retrieve, customer_id)

    async def create_customer(self, **params):
        return await self._call(stripe.Customer.create, **params)

    async def modify_customer(self, customer_id: str, **params):
        return await self._call(stripe.Customer.modify, customer_id, **params)

    async def retrieve_plan(self, plan_id: str):
        return await self._call(stripe.Plan.retrieve, plan_id)

    async def create_plan(self, **params):
        return await self._call(stripe.Plan.create, **params)

    async def retrieve_subscription(self, subscription_id: str):
        return await self._call(stripe.Subscription.retrieve, subscription_id)

    async def create_subscription(self, **params):
        return await self._call(stripe.Subscription.create, **params)

    async def modify_subscription(self, subscription_id: str, **params):
        return await self._call(stripe.Subscription.modify, subscription_id, **params)

    async def cancel_subscription(self, subscription_id: str):
        return await self._call(stripe.Subscription.cancel, subscription_id)

    async def create_payment_intent(self, **params):
        return await self._call(stripe.PaymentIntent.create, **params)

    async def list_webhook_endpoints(self):
        return await self._call(stripe.WebhookEndpoint.list, limit=100)
