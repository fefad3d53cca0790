"""Request payloads for the gateway endpoints.

Field aliases follow the camelCase names the checkout pages send.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class GatewayRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SubscriptionCreateRequest(GatewayRequest):
    """A validator registering a subscription it sold."""

    name: str = Field(min_length=1)
    price: Decimal = Field(ge=0)
    external_subscription_id: str | None = Field(default=None, alias="subscriptionId")
    consumer_wallet_address: str | None = Field(default=None, alias="consumerWalletAddress")
    validator_wallet_address: str | None = Field(default=None, alias="validatorWalletAddress")
    hotkey: str | None = None
    token: str = "USDC"


class PaymentTokenRequest(GatewayRequest):
    service_id: str = Field(min_length=1, alias="serviceId")
    email: str | None = None
    url: str | None = None
    redirect: str | None = None
    consumer_id: str | None = Field(default=None, alias="consumerId")


class PaymentRequest(GatewayRequest):
    """Card enrollment submitted by the checkout page."""

    rn_token: str = Field(min_length=1, alias="rnToken")
    email: str = Field(min_length=3)
    token: str | None = None
    last_four: str | None = Field(default=None, alias="lastFour")
    exp_month: int | None = Field(default=None, alias="expMonth")
    exp_year: int | None = Field(default=None, alias="expYear")


class UnsubscribeRequest(GatewayRequest):
    service_id: str = Field(min_length=1, alias="serviceId")


class PaymentIntentRequest(GatewayRequest):
    rn_token: str = Field(min_length=1, alias="rnToken")
    quantity: int = Field(default=1, ge=1)


class PayPalOrderRequest(GatewayRequest):
    rn_token: str = Field(min_length=1, alias="rnToken")


class PayPalCaptureRequest(GatewayRequest):
    quantity: int | None = Field(default=None, ge=1)


class PayPalSubscriptionRequest(GatewayRequest):
    rn_token: str = Field(min_length=1, alias="rnToken")
    paypal_subscription_id: str = Field(min_length=1, alias="subscriptionID")


class WithdrawalRequest(GatewayRequest):
    """Move tokens out of a subscription's escrow wallet."""

    to_address: str = Field(min_length=42, max_length=42, alias="toAddress")
    amount: Decimal = Field(gt=0)
    token: str | None = None
