"""Applies INACTIVE/ACTIVE transitions under the per-subscription lock.

Every ingestor funnels activation changes through here so that the
read-evaluate-write sequence for one subscription never interleaves with
another writer, and so that the validator hears about each effective flip.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from paygate.common.logging import bind, logger
from paygate.services.funding.evaluator import FundingVerdict
from paygate.services.subscriptions.models import PAYMENT_SERVICE_CRYPTO
from paygate.services.subscriptions.service import TransitionResult


class ActivationService:
    def __init__(self, subscriptions, evaluator, notifier, locks) -> None:
        self.subscriptions = subscriptions
        self.evaluator = evaluator
        self.notifier = notifier
        self.locks = locks

    @asynccontextmanager
    async def hold(self, subscription_id: str) -> AsyncIterator[None]:
        """Single-writer section for one subscription. Not re-entrant."""

        unbind = bind(subscription_id=subscription_id)
        try:
            async with self.locks.hold(subscription_id):
                yield
        finally:
            unbind()

    async def apply(
        self,
        subscription_id: str,
        active: bool,
        *,
        reason: str,
        rail: str | None = None,
        event_ref: str | None = None,
        notify_type: str | None = None,
        transaction: dict | None = None,
        quantity: int | None = None,
        always_notify: bool = False,
    ) -> TransitionResult | None:
        """Persist and announce a transition; caller must already hold the lock.

        The validator is told only when the flag actually changed, unless
        `always_notify` is set (payment receipts on an already active
        subscription).
        """

        result = self.subscriptions.set_active(
            subscription_id, active, reason=reason, rail=rail, event_ref=event_ref
        )
        if result is None:
            logger.warning("transition_skipped subscription_id=%s reason=not_found", subscription_id)
            return None
        if result.changed or always_notify:
            await self.notifier.notify(
                result.subscription.notify_id,
                active,
                type=notify_type,
                transaction=transaction,
                quantity=quantity,
            )
        return result

    async def activate(self, subscription_id: str, **kwargs) -> TransitionResult | None:
        async with self.hold(subscription_id):
            return await self.apply(subscription_id, True, **kwargs)

    async def deactivate(self, subscription_id: str, **kwargs) -> TransitionResult | None:
        async with self.hold(subscription_id):
            return await self.apply(subscription_id, False, **kwargs)

    async def reconcile(
        self, subscription_id: str, *, allow_deactivate: bool = True, event_ref: str | None = None
    ) -> FundingVerdict | None:
        """Evaluate funding and act on the verdict.

        Sufficient and inactive activates. Insufficient past the grace window
        deactivates an active subscription when `allow_deactivate` is set.
        Inside the grace window nothing changes.
        """

        async with self.hold(subscription_id):
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None:
                logger.warning("reconcile_skipped subscription_id=%s reason=not_found", subscription_id)
                return None
            verdict = await self.evaluator.evaluate(subscription)
            if verdict is None:
                return None

            if verdict.sufficient:
                if not subscription.active:
                    await self.apply(
                        subscription_id,
                        True,
                        reason="funding_sufficient",
                        rail=PAYMENT_SERVICE_CRYPTO,
                        event_ref=event_ref,
                    )
            elif verdict.grace_period:
                logger.info("reconcile_grace subscription_id=%s outstanding=%s", subscription_id, verdict.outstanding)
            elif subscription.active and allow_deactivate:
                await self.apply(subscription_id, False, reason="grace_expired", event_ref=event_ref)
            return verdict
