"""Outcome and error types shared by the card and PayPal rails."""

from dataclasses import dataclass


class RailError(RuntimeError):
    """A rail call failed or returned something we cannot act on."""


class RailNotConfigured(RailError):
    """Credentials for a rail are missing from the environment."""


@dataclass(frozen=True)
class WebhookResult:
    """What a webhook ingestor decided about one delivery.

    `status_code` is what the HTTP layer should answer: 2xx acknowledges the
    delivery, 400 rejects it permanently, 503 asks the rail to redeliver.
    """

    ok: bool
    status_code: int
    outcome: str
    detail: str | None = None

    @classmethod
    def processed(cls) -> "WebhookResult":
        return cls(ok=True, status_code=200, outcome="processed")

    @classmethod
    def acknowledged(cls, reason: str) -> "WebhookResult":
        return cls(ok=True, status_code=200, outcome=reason)

    @classmethod
    def rejected(cls, detail: str) -> "WebhookResult":
        return cls(ok=False, status_code=400, outcome="rejected", detail=detail)

    @classmethod
    def retryable(cls, detail: str) -> "WebhookResult":
        return cls(ok=False, status_code=503, outcome="unconfigured", detail=detail)

    def body(self) -> dict:
        if self.ok:
            return {"data": "ok", "outcome": self.outcome}
        return {"data": None, "error": self.detail}
