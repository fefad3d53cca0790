"""Subscription Store, enrollment store and webhook inbox.

Activation changes are validated by the state machine and written with an
optimistic `(id, state_version)` guard; every effective change leaves one
timeline row.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from paygate.common.config import settings
from paygate.common.logging import logger
from paygate.common.metrics import subscription_transitions_total
from paygate.common.state_machine import is_noop, state_of
from paygate.services.subscriptions.models import (
    PAYMENT_SERVICES,
    InboxEvent,
    PayPalEnrollment,
    StripeEnrollment,
    Subscription,
    SubscriptionTimeline,
)


class ConcurrentUpdateError(RuntimeError):
    """Raised when a subscription row changed between read and write."""


@dataclass
class TransitionResult:
    subscription: Subscription
    changed: bool
    from_active: bool


class SubscriptionStore:
    """Owns `subscriptions` rows and their timeline."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def create(
        self,
        *,
        name: str = "",
        price: Decimal | str | None = None,
        external_subscription_id: str | None = None,
        consumer_wallet_address: str | None = None,
        validator_wallet_address: str | None = None,
        hotkey: str | None = None,
        token: str = "USDC",
        created_at: datetime | None = None,
        meta: dict | None = None,
    ) -> Subscription:
        subscription = Subscription(
            name=name,
            price=Decimal(str(price)) if price is not None else None,
            external_subscription_id=external_subscription_id,
            consumer_wallet_address=consumer_wallet_address,
            validator_wallet_address=validator_wallet_address,
            hotkey=hotkey,
            token=token,
            meta=meta,
            active=False,
        )
        if created_at is not None:
            subscription.created_at = created_at
        with self.session_factory() as db:
            db.add(subscription)
            db.commit()
            db.refresh(subscription)
        return subscription

    def get(self, subscription_id: str) -> Subscription | None:
        with self.session_factory() as db:
            return db.get(Subscription, subscription_id)

    def by_external_id(self, external_subscription_id: str) -> Subscription | None:
        with self.session_factory() as db:
            return db.execute(
                select(Subscription).where(Subscription.external_subscription_id == external_subscription_id)
            ).scalars().first()

    def by_consumer_wallet(self, address: str) -> Subscription | None:
        with self.session_factory() as db:
            return db.execute(
                select(Subscription).where(
                    func.lower(Subscription.consumer_wallet_address) == address.lower()
                )
            ).scalars().first()

    def chain_funded(self) -> list[Subscription]:
        """Subscriptions whose wallets the chain ingestor watches."""

        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Subscription).where(
                        Subscription.hotkey.is_not(None),
                        Subscription.consumer_wallet_address.is_not(None),
                    )
                )
                .scalars()
                .all()
            )

    def active_chain_funded(self) -> list[Subscription]:
        return [subscription for subscription in self.chain_funded() if subscription.active]

    def set_active(
        self,
        subscription_id: str,
        active: bool,
        *,
        reason: str,
        rail: str | None = None,
        event_ref: str | None = None,
    ) -> TransitionResult | None:
        """Persist the activation flag once.

        Returns `None` when the subscription does not exist. A self-transition
        writes nothing and reports `changed=False`.
        """

        if rail is not None and rail not in PAYMENT_SERVICES:
            raise ValueError(f"unknown payment service: {rail}")
        with self.session_factory() as db:
            subscription = db.get(Subscription, subscription_id)
            if subscription is None:
                return None
            from_active = bool(subscription.active)
            if is_noop(state_of(from_active), state_of(active)):
                return TransitionResult(subscription=subscription, changed=False, from_active=from_active)

            current_version = subscription.state_version
            values = {
                "active": active,
                "state_version": current_version + 1,
                "updated_at": datetime.now(timezone.utc),
            }
            if rail is not None:
                values["payment_service"] = rail
            result = db.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    Subscription.state_version == current_version,
                )
                .values(**values)
            )
            if result.rowcount != 1:
                db.rollback()
                raise ConcurrentUpdateError(
                    f"optimistic concurrency conflict for subscription {subscription_id} "
                    f"(expected version {current_version})"
                )
            db.add(
                SubscriptionTimeline(
                    subscription_id=subscription_id,
                    from_active=from_active,
                    to_active=active,
                    reason=reason,
                    rail=rail,
                    event_ref=event_ref,
                )
            )
            db.commit()
            db.refresh(subscription)

        subscription_transitions_total.labels(
            service=settings.service_name, to_state=state_of(active), reason=reason
        ).inc()
        logger.info(
            "subscription_transition subscription_id=%s from=%s to=%s reason=%s rail=%s",
            subscription_id,
            state_of(from_active),
            state_of(active),
            reason,
            rail,
        )
        return TransitionResult(subscription=subscription, changed=True, from_active=from_active)

    def timeline(self, subscription_id: str) -> list[SubscriptionTimeline]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(SubscriptionTimeline)
                    .where(SubscriptionTimeline.subscription_id == subscription_id)
                    .order_by(SubscriptionTimeline.created_at)
                )
                .scalars()
                .all()
            )


class EnrollmentStore:
    """Rail enrollment rows; at most one per subscription per rail."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def stripe_for(self, subscription_id: str) -> StripeEnrollment | None:
        with self.session_factory() as db:
            return db.execute(
                select(StripeEnrollment).where(StripeEnrollment.subscription_id == subscription_id)
            ).scalar_one_or_none()

    def stripe_by_rail_subscription(self, stripe_subscription_id: str) -> StripeEnrollment | None:
        with self.session_factory() as db:
            return db.execute(
                select(StripeEnrollment).where(StripeEnrollment.stripe_subscription_id == stripe_subscription_id)
            ).scalar_one_or_none()

    def stripe_by_email(self, email: str) -> StripeEnrollment | None:
        with self.session_factory() as db:
            return db.execute(
                select(StripeEnrollment).where(StripeEnrollment.email == email).order_by(StripeEnrollment.created_at)
            ).scalars().first()

    def paypal_for(self, subscription_id: str) -> PayPalEnrollment | None:
        with self.session_factory() as db:
            return db.execute(
                select(PayPalEnrollment).where(PayPalEnrollment.subscription_id == subscription_id)
            ).scalar_one_or_none()

    def paypal_by_rail_subscription(self, paypal_subscription_id: str) -> PayPalEnrollment | None:
        with self.session_factory() as db:
            return db.execute(
                select(PayPalEnrollment).where(PayPalEnrollment.paypal_subscription_id == paypal_subscription_id)
            ).scalar_one_or_none()

    def upsert_stripe(self, subscription_id: str, **fields) -> StripeEnrollment:
        return self._upsert(StripeEnrollment, subscription_id, fields)

    def upsert_paypal(self, subscription_id: str, **fields) -> PayPalEnrollment:
        return self._upsert(PayPalEnrollment, subscription_id, fields)

    def patch_stripe(self, enrollment_id: str, **fields) -> StripeEnrollment | None:
        return self._patch(StripeEnrollment, enrollment_id, fields)

    def patch_paypal(self, enrollment_id: str, **fields) -> PayPalEnrollment | None:
        return self._patch(PayPalEnrollment, enrollment_id, fields)

    def _upsert(self, model, subscription_id: str, fields: dict):
        with self.session_factory() as db:
            row = db.execute(select(model).where(model.subscription_id == subscription_id)).scalar_one_or_none()
            if row is None:
                row = model(subscription_id=subscription_id)
                db.add(row)
            for key, value in fields.items():
                setattr(row, key, value)
            db.commit()
            db.refresh(row)
            return row

    def _patch(self, model, enrollment_id: str, fields: dict):
        with self.session_factory() as db:
            row = db.get(model, enrollment_id)
            if row is None:
                return None
            for key, value in fields.items():
                setattr(row, key, value)
            db.commit()
            db.refresh(row)
            return row


class WebhookInbox:
    """Delivery ids already applied by a consumer (`stripe`, `paypal`)."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def seen(self, event_id: str, consumer: str) -> bool:
        with self.session_factory() as db:
            existing = db.execute(
                select(InboxEvent).where(
                    InboxEvent.event_id == event_id,
                    InboxEvent.consumed_by == consumer,
                )
            ).scalar_one_or_none()
            return existing is not None

    def mark(self, event_id: str, consumer: str, event_type: str | None = None) -> bool:
        """Record a fully applied delivery; False when it was already recorded."""

        with self.session_factory() as db:
            db.add(InboxEvent(event_id=event_id, consumed_by=consumer, event_type=event_type))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True
