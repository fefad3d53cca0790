"""Fetch and print the funding report for one subscription."""

import argparse
import json
import os

import httpx

from paygate.common.signing import create_signature, make_nonce


def main() -> None:
    """CLI entrypoint for funding checks."""

    parser = argparse.ArgumentParser(description="Fetch a subscription funding report from the gateway.")
    parser.add_argument("subscription_id")
    parser.add_argument("--gateway-url", default="http://localhost:8080")
    parser.add_argument("--api-key", default=os.getenv("VALIDATOR_API_KEY", ""))
    parser.add_argument("--api-secret", default=os.getenv("VALIDATOR_API_SECRET", ""))
    parser.add_argument("--key-header", default="x-taoshi-validator-request-key")
    args = parser.parse_args()

    if not args.api_secret:
        raise SystemExit("Provide --api-secret or set VALIDATOR_API_SECRET")

    path = f"/subscriptions/{args.subscription_id}/funding"
    nonce = make_nonce()
    signature = create_signature("GET", path, "", args.api_key, args.api_secret, nonce)
    resp = httpx.get(
        f"{args.gateway_url.rstrip('/')}{path}",
        headers={
            args.key_header: args.api_key,
            "x-taoshi-nonce": nonce,
            "Authorization": f"Bearer {signature}",
        },
        timeout=10.0,
    )
    resp.raise_for_status()
    print(json.dumps(resp.json(), indent=2))


if __name__ == "__main__":
    main()
