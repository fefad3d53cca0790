"""Startup summary: redacted environment plus which payment rails are usable."""

import os

from paygate.common.config import settings
from paygate.common.logging import logger


SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN", "DSN", "PROJECT_ID", "WEBHOOK_ID")


def _safe_env(name: str) -> str:
    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    return value


def rail_readiness() -> dict[str, bool]:
    """Which ingestors have the credentials they need."""

    return {
        "stripe": bool(settings.stripe_secret_key and settings.stripe_webhook_secret),
        "paypal": bool(settings.paypal_client_id and settings.paypal_client_secret and settings.paypal_webhook_id),
        "chain": bool(settings.rpc_url),
        "validator": bool(settings.validator_api_key and settings.validator_api_secret),
        "enrollment_tokens": bool(settings.payment_enrollment_secret),
        "escrow": bool(settings.escrow_encryption_key),
    }


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected config keys and rail readiness once at process start."""

    config = {"service": service_name, **{key: _safe_env(key) for key in keys}}
    readiness = rail_readiness()
    logger.info("startup_config=%s rails=%s", config, readiness)
    missing = sorted(name for name, ready in readiness.items() if not ready)
    if missing:
        logger.warning("rails_unconfigured names=%s", ",".join(missing))
