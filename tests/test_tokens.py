"""Enrollment tokens for the checkout pages."""

import jwt
import pytest

from paygate.common.config import settings
from paygate.common.rails import RailNotConfigured
from paygate.services.subscriptions.tokens import EnrollmentClaims, issue_token, read_token

CLAIMS = EnrollmentClaims(
    service_id="svc-1",
    subscription_id="ext-1",
    name="Signals",
    price="10.00",
    email="buyer@example.com",
)


def test_token_carries_claims():
    assert read_token(issue_token(CLAIMS, secret="s3cret"), secret="s3cret") == CLAIMS


def test_expired_token_is_rejected():
    token = issue_token(CLAIMS, secret="s3cret", ttl_minutes=-1)

    with pytest.raises(jwt.ExpiredSignatureError):
        read_token(token, secret="s3cret")


def test_foreign_token_is_rejected():
    with pytest.raises(jwt.InvalidSignatureError):
        read_token(issue_token(CLAIMS, secret="other"), secret="s3cret")


def test_token_without_price_is_rejected():
    token = jwt.encode({"service_id": "svc-1", "subscription_id": "ext-1"}, "s3cret", algorithm="HS256")

    with pytest.raises(jwt.InvalidTokenError):
        read_token(token, secret="s3cret")


def test_missing_secret(monkeypatch):
    monkeypatch.setattr(settings, "payment_enrollment_secret", None)

    with pytest.raises(RailNotConfigured):
        issue_token(CLAIMS)
