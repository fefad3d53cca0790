"""Sign a Stripe-style webhook payload and post it to a local gateway.

Useful for replay and cross-tenant checks without a Stripe account.
"""

import argparse
import hashlib
import hmac
import json
import os
import time
from pathlib import Path

import httpx


def stripe_signature_header(payload: str, secret: str, timestamp: int | None = None) -> str:
    """`t=<ts>,v1=<hex>` over `"<ts>.<payload>"`, as Stripe signs deliveries."""

    timestamp = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def main() -> None:
    """Parse CLI args, sign one payload and post it."""

    parser = argparse.ArgumentParser(description="Post a signed Stripe webhook payload to the gateway.")
    parser.add_argument("--gateway-url", default="http://localhost:8080")
    parser.add_argument("--secret", default=os.getenv("STRIPE_WEBHOOK_SECRET", ""))
    parser.add_argument("--json", dest="json_inline", default=None, help="Inline JSON payload")
    parser.add_argument("--file", dest="json_file", default=None, help="Path to JSON file")
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same payload N times")
    args = parser.parse_args()

    if bool(args.json_inline) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --json or --file")
    if not args.secret:
        raise SystemExit("Provide --secret or set STRIPE_WEBHOOK_SECRET")

    raw = args.json_inline if args.json_inline else Path(args.json_file).read_text()
    payload = json.dumps(json.loads(raw))
    for attempt in range(args.repeat):
        resp = httpx.post(
            f"{args.gateway_url.rstrip('/')}/webhooks",
            content=payload,
            headers={"Content-Type": "application/json", "Stripe-Signature": stripe_signature_header(payload, args.secret)},
            timeout=10.0,
        )
        print(f"delivery={attempt + 1} status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
