"""HMAC request signing shared with the validator/UI services."""

import hashlib
import hmac
import time


def make_nonce() -> str:
    """Millisecond epoch nonce, the format the validator API expects."""

    return str(int(time.time() * 1000))


def create_signature(method: str, path: str, body: str, api_key: str, api_secret: str, nonce: str) -> str:
    """Hex HMAC-SHA256 over `method + path + body + api_key + nonce`."""

    message = f"{method}{path}{body}{api_key}{nonce}"
    return hmac.new(api_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(
    signature: str, method: str, path: str, body: str, api_key: str, api_secret: str, nonce: str
) -> bool:
    expected = create_signature(method, path, body, api_key, api_secret, nonce)
    return hmac.compare_digest(expected, signature or "")
