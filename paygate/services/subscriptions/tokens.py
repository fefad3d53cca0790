"""Short-lived enrollment tokens handed to the checkout pages.

The token pins which subscription and price a checkout is for, so card and
PayPal calls never trust price or ids sent by the browser.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

import jwt

from paygate.common.config import settings
from paygate.common.rails import RailNotConfigured


ALGORITHM = "HS256"


@dataclass(frozen=True)
class EnrollmentClaims:
    service_id: str
    subscription_id: str
    name: str
    price: str
    email: str | None = None
    url: str | None = None
    redirect: str | None = None
    consumer_id: str | None = None


def _secret(secret: str | None) -> str:
    value = secret or settings.payment_enrollment_secret
    if not value:
        raise RailNotConfigured("PAYMENT_ENROLLMENT_SECRET is not set")
    return value


def issue_token(claims: EnrollmentClaims, *, secret: str | None = None, ttl_minutes: int | None = None) -> str:
    ttl = settings.enrollment_token_ttl_minutes if ttl_minutes is None else ttl_minutes
    payload = {key: value for key, value in asdict(claims).items() if value is not None}
    payload["exp"] = datetime.now(timezone.utc) + timedelta(minutes=ttl)
    return jwt.encode(payload, _secret(secret), algorithm=ALGORITHM)


def read_token(token: str, *, secret: str | None = None) -> EnrollmentClaims:
    """Decode and validate a token; raises `jwt.InvalidTokenError` when it is bad or expired."""

    payload = jwt.decode(token, _secret(secret), algorithms=[ALGORITHM])
    missing = [key for key in ("service_id", "subscription_id", "price") if key not in payload]
    if missing:
        raise jwt.InvalidTokenError(f"missing claims: {','.join(missing)}")
    return EnrollmentClaims(
        service_id=payload["service_id"],
        subscription_id=payload["subscription_id"],
        name=payload.get("name", ""),
        price=str(payload["price"]),
        email=payload.get("email"),
        url=payload.get("url"),
        redirect=payload.get("redirect"),
        consumer_id=payload.get("consumer_id"),
    )
