"""Signed status calls to the upstream validator API.

Notifications are fire-and-forget: a failed call is logged and counted but
never retried and never rolls back the local state change that preceded it.
"""

import json

import httpx

from paygate.common.config import settings
from paygate.common.logging import logger
from paygate.common.metrics import validator_notifications_total
from paygate.common.signing import create_signature, make_nonce


STATUS_PATH = "/api/status"
REGISTER_PATH = "/api/register"


class ValidatorNotifier:
    """Sends `PUT /api/status` with the validator's HMAC request signature."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        api_secret: str | None = None,
        *,
        key_header: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.validator_api_url).rstrip("/")
        self.api_key = settings.validator_api_key if api_key is None else api_key
        self.api_secret = settings.validator_api_secret if api_secret is None else api_secret
        self.key_header = key_header or settings.validator_key_header
        self.timeout_seconds = timeout_seconds or settings.notify_timeout_seconds
        self.transport = transport

    def _signed_headers(self, method: str, path: str, body: str) -> dict[str, str]:
        nonce = make_nonce()
        signature = create_signature(method, path, body, self.api_key, self.api_secret, nonce)
        return {
            "Content-Type": "application/json",
            self.key_header: self.api_key,
            "x-taoshi-nonce": nonce,
            "Authorization": f"Bearer {signature}",
        }

    async def _send(self, method: str, path: str, payload: dict) -> httpx.Response:
        # The signed body must be byte-identical to what goes on the wire.
        body = json.dumps(payload, separators=(",", ":"), default=str)
        headers = self._signed_headers(method, path, body)
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            return await client.request(method, f"{self.base_url}{path}", content=body, headers=headers)

    async def notify(
        self,
        subscription_id: str,
        active: bool,
        *,
        type: str | None = None,
        transaction: dict | None = None,
        quantity: int | None = None,
    ) -> bool:
        """Tell the validator a subscription's status; returns delivery success."""

        payload: dict = {"subscriptionId": subscription_id, "active": active}
        if type is not None:
            payload["type"] = type
        if transaction is not None:
            payload["transaction"] = transaction
        if quantity is not None:
            payload["quantity"] = quantity

        try:
            response = await self._send("PUT", STATUS_PATH, payload)
        except httpx.HTTPError as exc:
            validator_notifications_total.labels(service=settings.service_name, outcome="transport_error").inc()
            logger.error(
                "validator_notify_failed subscription_id=%s active=%s error=%s",
                subscription_id,
                active,
                exc,
            )
            return False

        if response.status_code >= 400:
            validator_notifications_total.labels(service=settings.service_name, outcome="rejected").inc()
            logger.error(
                "validator_notify_rejected subscription_id=%s active=%s status=%s body=%s",
                subscription_id,
                active,
                response.status_code,
                response.text[:500],
            )
            return False

        validator_notifications_total.labels(service=settings.service_name, outcome="sent").inc()
        logger.info("validator_notified subscription_id=%s active=%s type=%s", subscription_id, active, type)
        return True

    async def register(self, api_url: str | None = None) -> bool:
        """Announce this gateway's public URL to the upstream UI."""

        payload = {"url": api_url or settings.api_host}
        try:
            response = await self._send("POST", REGISTER_PATH, payload)
        except httpx.HTTPError as exc:
            logger.error("gateway_register_failed url=%s error=%s", payload["url"], exc)
            return False
        if response.status_code >= 400:
            logger.error("gateway_register_rejected url=%s status=%s", payload["url"], response.status_code)
            return False
        logger.info("gateway_registered url=%s", payload["url"])
        return True
