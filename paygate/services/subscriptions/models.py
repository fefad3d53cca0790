"""Subscription, enrollment and webhook-inbox models.

The `subscriptions` row is the source of truth for whether a consumer's service
is usable; enrollments mirror the state each rail reports.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from paygate.common.db import Base, JSONType


PAYMENT_SERVICE_NONE = "NONE"
PAYMENT_SERVICE_STRIPE = "STRIPE"
PAYMENT_SERVICE_PAYPAL = "PAYPAL"
PAYMENT_SERVICE_CRYPTO = "CRYPTO"
PAYMENT_SERVICES = (
    PAYMENT_SERVICE_NONE,
    PAYMENT_SERVICE_STRIPE,
    PAYMENT_SERVICE_PAYPAL,
    PAYMENT_SERVICE_CRYPTO,
)


class Subscription(Base):
    """Billing state of one enrolled service."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    # Id the validator knows the subscription by.
    external_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String, default="")
    active: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    token: Mapped[str] = mapped_column(String, default="USDC")
    consumer_wallet_address: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    validator_wallet_address: Mapped[str | None] = mapped_column(String, nullable=True)
    hotkey: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_service: Mapped[str] = mapped_column(String, default=PAYMENT_SERVICE_NONE)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meta: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def notify_id(self) -> str:
        return self.external_subscription_id or self.id

    @property
    def chain_funded(self) -> bool:
        return bool(self.hotkey and self.consumer_wallet_address)


class SubscriptionTimeline(Base):
    """Immutable audit trail of every effective activation change."""

    __tablename__ = "subscription_timeline"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    subscription_id: Mapped[str] = mapped_column(ForeignKey("subscriptions.id"), index=True)
    from_active: Mapped[bool] = mapped_column(Boolean)
    to_active: Mapped[bool] = mapped_column(Boolean)
    reason: Mapped[str] = mapped_column(String)
    rail: Mapped[str | None] = mapped_column(String, nullable=True)
    event_ref: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class StripeEnrollment(Base):
    """Card-rail identifiers and rail-local funding mirror."""

    __tablename__ = "stripe_enrollments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    subscription_id: Mapped[str] = mapped_column(ForeignKey("subscriptions.id"), unique=True, index=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    stripe_plan_id: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    last_four: Mapped[str | None] = mapped_column(String(4), nullable=True)
    exp_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    exp_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    first_payment: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid: Mapped[bool] = mapped_column(Boolean, default=False)
    active: Mapped[bool] = mapped_column(Boolean, default=False)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PayPalEnrollment(Base):
    """Alt-rail identifiers and rail-local funding mirror."""

    __tablename__ = "paypal_enrollments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    subscription_id: Mapped[str] = mapped_column(ForeignKey("subscriptions.id"), unique=True, index=True)
    paypal_payer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    paypal_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    paypal_plan_id: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    first_payment: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid: Mapped[bool] = mapped_column(Boolean, default=False)
    active: Mapped[bool] = mapped_column(Boolean, default=False)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class InboxEvent(Base):
    """Deduplication table for fully applied webhook deliveries."""

    __tablename__ = "inbox_events"
    __table_args__ = (UniqueConstraint("event_id", "consumed_by", name="uq_inbox_consumer"),)

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_by: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str | None] = mapped_column(String, nullable=True)
    consumed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
