"""HTTP surface of the payment gateway.

Checkout pages call the rail endpoints with an enrollment token; validators
call the signed endpoints; Stripe and PayPal deliver webhooks. The lifespan
runs the chain ingestor and the reconciliation scheduler next to the app.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from time import perf_counter

import httpx
import jwt
import stripe
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from paygate.common.config import settings
from paygate.common.db import SessionLocal
from paygate.common.locks import build_locks
from paygate.common.logging import configure_logging, logger
from paygate.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from paygate.common.rails import RailError, RailNotConfigured
from paygate.common.signing import verify_signature
from paygate.common.startup import log_startup_config
from paygate.common.tracing import instrument_app, setup_tracing
from paygate.services.activation.service import ActivationService
from paygate.services.chain.client import ChainClient
from paygate.services.chain.registry import WalletRegistry
from paygate.services.chain.service import ChainEventIngestor
from paygate.services.funding.evaluator import FundingEvaluator
from paygate.services.gateway.schemas import (
    PaymentIntentRequest,
    PaymentRequest,
    PaymentTokenRequest,
    PayPalCaptureRequest,
    PayPalOrderRequest,
    PayPalSubscriptionRequest,
    SubscriptionCreateRequest,
    UnsubscribeRequest,
    WithdrawalRequest,
)
from paygate.services.escrow.service import EscrowKeyring, EscrowService
from paygate.services.ledger.service import LedgerStore
from paygate.services.notifier.client import ValidatorNotifier
from paygate.services.paypal_rail.client import PayPalClient
from paygate.services.paypal_rail.service import PayPalRailService
from paygate.services.stripe_rail.client import StripeRail
from paygate.services.stripe_rail.service import StripeRailService
from paygate.services.subscriptions.service import EnrollmentStore, SubscriptionStore, WebhookInbox
from paygate.services.subscriptions.tokens import EnrollmentClaims, issue_token, read_token
from paygate.services.sweep.service import ReconciliationSweep, build_scheduler

NONCE_HEADER = "x-taoshi-nonce"
NONCE_MAX_AGE_MS = 5 * 60 * 1000

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "LOCK_BACKEND",
        "API_HOST",
        "VALIDATOR_API_URL",
        "CHAIN_NETWORK",
        "CHAIN_RPC_URL",
        "INFURA_PROJECT_ID",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "PAYPAL_CLIENT_ID",
        "PAYPAL_WEBHOOK_ID",
        "ESCROW_ENCRYPTION_KEY",
    ],
)

ledger = LedgerStore(SessionLocal)
subscriptions = SubscriptionStore(SessionLocal)
enrollments = EnrollmentStore(SessionLocal)
inbox = WebhookInbox(SessionLocal)
locks = build_locks()
chain = ChainClient()
registry = WalletRegistry(subscriptions)
escrow = EscrowService(SessionLocal, EscrowKeyring(), chain, subscriptions, ledger)
notifier = ValidatorNotifier()
evaluator = FundingEvaluator(ledger, chain)
activation = ActivationService(subscriptions, evaluator, notifier, locks)
sweep = ReconciliationSweep(subscriptions, ledger, chain, activation, registry)
scheduler = build_scheduler()
ingestor = ChainEventIngestor(chain, registry, ledger, activation, sweep=sweep, scheduler=scheduler)
stripe_service = StripeRailService(StripeRail(), subscriptions, enrollments, ledger, activation, notifier, inbox)
paypal_service = PayPalRailService(PayPalClient(), subscriptions, enrollments, ledger, activation, notifier, inbox)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the chain ingestor, the sweep scheduler and UI registration with app lifecycle."""

    tasks = [asyncio.create_task(notifier.register())]
    scheduler.start()
    if settings.rpc_url:
        tasks.append(asyncio.create_task(ingestor.run_forever()))
    else:
        logger.warning("chain_ingestor_disabled reason=no_rpc_url")
    yield
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await ingestor.close()
    scheduler.shutdown(wait=False)
    if hasattr(locks, "close"):
        await locks.close()


app = FastAPI(title="Payment Gateway", lifespan=lifespan)
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(service=settings.service_name, route=route, method=method).observe(
            elapsed
        )
        http_requests_total.labels(
            service=settings.service_name, route=route, method=method, status_code=str(status_code)
        ).inc()


@app.exception_handler(RailNotConfigured)
async def rail_not_configured(_: Request, exc: RailNotConfigured):
    return JSONResponse({"error": str(exc)}, status_code=503)


@app.exception_handler(RailError)
async def rail_error(_: Request, exc: RailError):
    return JSONResponse({"error": str(exc)}, status_code=400)


@app.exception_handler(stripe.StripeError)
async def stripe_error(_: Request, exc: stripe.StripeError):
    logger.warning("stripe_call_failed error=%s", exc)
    return JSONResponse({"error": exc.user_message or str(exc)}, status_code=400)


@app.exception_handler(httpx.HTTPError)
async def upstream_error(_: Request, exc: httpx.HTTPError):
    logger.error("upstream_call_failed error=%s", exc)
    return JSONResponse({"error": "upstream provider unavailable"}, status_code=502)


@app.exception_handler(jwt.InvalidTokenError)
async def invalid_token(_: Request, exc: jwt.InvalidTokenError):
    return JSONResponse({"error": "Invalid or expired payment token."}, status_code=401)


@app.exception_handler(LookupError)
async def not_found(_: Request, exc: LookupError):
    return JSONResponse({"error": str(exc.args[0]) if exc.args else "Not found."}, status_code=404)


async def require_validator_signature(request: Request) -> None:
    """Reject requests not signed with the shared validator key and secret."""

    if not settings.validator_api_secret:
        raise HTTPException(status_code=503, detail="validator credentials are not configured")
    api_key = request.headers.get(settings.validator_key_header, "")
    nonce = request.headers.get(NONCE_HEADER, "")
    signature = request.headers.get("authorization", "").removeprefix("Bearer ").strip()
    if api_key != settings.validator_api_key or not nonce.isdigit():
        raise HTTPException(status_code=401, detail="invalid request signature")
    if abs(time.time() * 1000 - int(nonce)) > NONCE_MAX_AGE_MS:
        raise HTTPException(status_code=401, detail="stale request nonce")
    body = (await request.body()).decode("utf-8")
    if not verify_signature(
        signature, request.method, request.url.path, body, api_key, settings.validator_api_secret, nonce
    ):
        raise HTTPException(status_code=401, detail="invalid request signature")


def _subscription(service_id: str):
    subscription = subscriptions.get(service_id) or subscriptions.by_external_id(service_id)
    if subscription is None:
        raise LookupError("Service not found.")
    return subscription


@app.post("/subscriptions", status_code=201, dependencies=[Depends(require_validator_signature)])
def create_subscription(req: SubscriptionCreateRequest):
    """Register a subscription sold by a validator; starts INACTIVE.

    Chain-funded registrations without a wallet get a gateway-held escrow
    address, returned as `publicKey`.
    """

    if req.external_subscription_id and subscriptions.by_external_id(req.external_subscription_id):
        raise HTTPException(status_code=409, detail="subscription already registered")
    account = None
    wallet_address = req.consumer_wallet_address
    if wallet_address is None and req.hotkey:
        account = escrow.new_account()
        wallet_address = account.address
    subscription = subscriptions.create(
        name=req.name,
        price=req.price,
        external_subscription_id=req.external_subscription_id,
        consumer_wallet_address=wallet_address,
        validator_wallet_address=req.validator_wallet_address,
        hotkey=req.hotkey,
        token=req.token,
    )
    if account is not None:
        escrow.store(subscription.id, account)
    registry.refresh()
    return {"id": subscription.id, "active": subscription.active, "publicKey": wallet_address}


@app.post("/subscriptions/{subscription_id}/withdraw", dependencies=[Depends(require_validator_signature)])
async def withdraw(subscription_id: str, req: WithdrawalRequest):
    """Send tokens out of the subscription's escrow wallet."""

    subscription = _subscription(subscription_id)
    row = await escrow.withdraw(subscription.id, req.to_address, req.amount, req.token)
    return {"data": row.to_payload()}


@app.get("/subscriptions/{subscription_id}/funding", dependencies=[Depends(require_validator_signature)])
async def subscription_funding(subscription_id: str):
    """Funding report for one subscription; does not change its state."""

    subscription = _subscription(subscription_id)
    verdict = await evaluator.evaluate(subscription)
    if verdict is None:
        raise HTTPException(status_code=422, detail="subscription cannot be evaluated")
    return {"id": subscription.id, "active": subscription.active, **verdict.as_dict()}


@app.post("/payment-token", dependencies=[Depends(require_validator_signature)])
def payment_token(req: PaymentTokenRequest):
    """Issue the short-lived enrollment token a checkout page needs."""

    subscription = _subscription(req.service_id)
    if subscription.price is None:
        raise HTTPException(status_code=422, detail="subscription has no price")
    claims = EnrollmentClaims(
        service_id=subscription.id,
        subscription_id=subscription.notify_id,
        name=subscription.name,
        price=str(subscription.price),
        email=req.email,
        url=req.url,
        redirect=req.redirect,
        consumer_id=req.consumer_id,
    )
    return {"data": issue_token(claims)}


@app.post("/payment", status_code=201)
async def payment(req: PaymentRequest):
    """Card enrollment: create or reuse the Stripe customer and subscription."""

    claims = read_token(req.rn_token)
    enrollment = await stripe_service.enroll(
        claims,
        email=req.email,
        card_token=req.token,
        last_four=req.last_four,
        exp_month=req.exp_month,
        exp_year=req.exp_year,
    )
    return enrollment


@app.post("/unsubscribe", dependencies=[Depends(require_validator_signature)])
async def unsubscribe(req: UnsubscribeRequest):
    subscription = _subscription(req.service_id)
    return {"data": await stripe_service.cancel(subscription.id)}


@app.post("/webhooks")
async def stripe_webhooks(request: Request):
    """Stripe delivery endpoint; verification needs the untouched body."""

    raw_body = await request.body()
    result = await stripe_service.handle_webhook(raw_body, request.headers.get("stripe-signature"))
    return JSONResponse(result.body(), status_code=result.status_code)


@app.post("/stripe-payment-intent")
async def stripe_payment_intent(req: PaymentIntentRequest):
    claims = read_token(req.rn_token)
    return {"data": await stripe_service.create_payment_intent(claims, req.quantity)}


@app.get("/stripe-check")
async def stripe_check():
    """Operator setup page: which card-rail settings are in place."""

    return {"data": await stripe_service.rail_status()}


@app.post("/paypal-orders")
async def paypal_orders(req: PayPalOrderRequest):
    claims = read_token(req.rn_token)
    order, status_code = await paypal_service.create_order(claims)
    return JSONResponse(order, status_code=status_code)


@app.post("/paypal-orders/{order_id}/capture")
async def paypal_capture(order_id: str, req: PayPalCaptureRequest | None = None):
    quantity = req.quantity if req is not None else None
    order, status_code = await paypal_service.capture_order(order_id, quantity)
    return JSONResponse(order, status_code=status_code)


@app.post("/paypal-subscriptions", status_code=201)
async def paypal_subscriptions(req: PayPalSubscriptionRequest):
    """Buyer approved a PayPal subscription in the checkout page."""

    claims = read_token(req.rn_token)
    return {"data": await paypal_service.activate(claims, req.paypal_subscription_id)}


@app.post("/paypal-unsubscribe", dependencies=[Depends(require_validator_signature)])
async def paypal_unsubscribe(req: UnsubscribeRequest):
    subscription = _subscription(req.service_id)
    return {"data": await paypal_service.cancel(subscription.id)}


@app.post("/paypal-webhooks")
async def paypal_webhooks(request: Request):
    raw_body = await request.body()
    result = await paypal_service.handle_webhook(raw_body, request.headers)
    return JSONResponse(result.body(), status_code=result.status_code)


@app.get("/paypal-check")
def paypal_check():
    return {"data": paypal_service.rail_status()}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
