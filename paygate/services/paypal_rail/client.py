"""PayPal REST client (orders, subscriptions, webhook verification)."""

import base64
import json
import time

import httpx

from paygate.common.config import settings
from paygate.common.logging import logger
from paygate.common.rails import RailError, RailNotConfigured


WEBHOOK_EVENT_PLACEHOLDER = '":webhook_event:"'


class PayPalClient:
    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        *,
        base_url: str | None = None,
        webhook_id: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id if client_id is not None else settings.paypal_client_id
        self.client_secret = client_secret if client_secret is not None else settings.paypal_client_secret
        self.webhook_id = webhook_id if webhook_id is not None else settings.paypal_webhook_id
        self.base_url = (base_url or settings.paypal_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.rail_timeout_seconds
        self.transport = transport
        self._token: str | None = None
        self._token_expires_at = 0.0

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_seconds, transport=self.transport)

    async def access_token(self) -> str:
        """OAuth client-credentials token, cached until shortly before expiry."""

        if not self.configured:
            raise RailNotConfigured("PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET are not set")
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        basic = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode()
        async with self._client() as client:
            response = await client.post(
                "/v1/oauth2/token",
                content="grant_type=client_credentials",
                headers={
                    "Authorization": f"Basic {basic}",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
            )
        if response.status_code >= 400:
            raise RailError(f"paypal token request failed status={response.status_code}")
        data = response.json()
        self._token = data["access_token"]
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 0)) - 60, 0)
        return self._token

    async def _request(self, method: str, path: str, *, json_body: dict | None = None, content: str | None = None):
        token = await self.access_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json", "Accept": "application/json"}
        async with self._client() as client:
            if content is not None:
                return await client.request(method, path, content=content, headers=headers)
            return await client.request(method, path, json=json_body, headers=headers)

    @staticmethod
    def _json(response: httpx.Response) -> dict:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise RailError(response.text) from exc

    async def create_order(self, payload: dict) -> tuple[dict, int]:
        response = await self._request("POST", "/v2/checkout/orders", json_body=payload)
        return self._json(response), response.status_code

    async def capture_order(self, order_id: str) -> tuple[dict, int]:
        response = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture")
        return self._json(response), response.status_code

    async def get_subscription(self, paypal_subscription_id: str) -> dict:
        response = await self._request("GET", f"/v1/billing/subscriptions/{paypal_subscription_id}")
        if response.status_code >= 400:
            raise RailError(f"paypal subscription lookup failed status={response.status_code}")
        return self._json(response)

    async def cancel_subscription(self, paypal_subscription_id: str, reason: str = "User cancelled subscription") -> None:
        response = await self._request(
            "POST",
            f"/v1/billing/subscriptions/{paypal_subscription_id}/cancel",
            json_body={"reason": reason},
        )
        if response.status_code != 204:
            raise RailError("Unsubscribe failed.")

    async def verify_webhook_signature(self, raw_body: bytes, headers) -> bool:
        """Ask PayPal to verify a delivery; the raw body is embedded verbatim."""

        if not self.webhook_id:
            raise RailNotConfigured("PAYPAL_WEBHOOK_ID is not set")
        envelope = json.dumps(
            {
                "transmission_id": headers.get("paypal-transmission-id"),
                "transmission_time": headers.get("paypal-transmission-time"),
                "cert_url": headers.get("paypal-cert-url"),
                "auth_algo": headers.get("paypal-auth-algo"),
                "transmission_sig": headers.get("paypal-transmission-sig"),
                "webhook_id": self.webhook_id,
                "webhook_event": ":webhook_event:",
            }
        )
        body = envelope.replace(WEBHOOK_EVENT_PLACEHOLDER, raw_body.decode("utf-8"))
        response = await self._request("POST", "/v1/notifications/verify-webhook-signature", content=body)
        if response.status_code >= 400:
            logger.warning("paypal_verify_http_error status=%s", response.status_code)
            return False
        return self._json(response).get("verification_status") == "SUCCESS"
