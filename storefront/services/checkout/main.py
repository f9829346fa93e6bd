"""Checkout HTTP surface: order placement plus the payment and shipping helpers
the checkout page calls before it.

Order replays are short-circuited by a Redis response cache, quote endpoints
are rate limited per client, and background workers publish the outbox and
replay failed order writes for the lifetime of the app.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import asdict
from time import perf_counter, time
from uuid import uuid4

import redis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from storefront.common.config import settings
from storefront.common.db import SessionLocal
from storefront.common.errors import CheckoutError, ConfigurationError, ValidationError
from storefront.common.logging import configure_logging, logger, trace_id_ctx
from storefront.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from storefront.common.startup import log_startup_config
from storefront.common.tracing import instrument_app, setup_tracing
from storefront.integrations.content_store import SanityContentStore
from storefront.integrations.payments import StripeGateway
from storefront.integrations.shipping import ShippoClient
from storefront.services.checkout.schemas import (
    ErrorBody,
    OrderConfirmation,
    OrderRequest,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PlacementStatusResponse,
    RateOut,
    RatesRequest,
    RatesResponse,
    ReconciliationItem,
    ReconciliationReport,
    TrackingEventOut,
    TrackingResponse,
    TrackShipmentRequest,
)
from storefront.services.checkout.service import OrderPlacementService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "REDIS_URL",
        "KAFKA_BOOTSTRAP_SERVERS",
        "SHIPPO_MODE",
        "SANITY_PROJECT_ID",
        "SANITY_DATASET",
        "STRIPE_SECRET_KEY",
        "SHIPPO_API_KEY",
        "SANITY_WRITE_TOKEN",
    ],
)
service = OrderPlacementService(SessionLocal, StripeGateway(), ShippoClient(), SanityContentStore())
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)


def get_service() -> OrderPlacementService:
    return service


def get_redis() -> redis.Redis:
    return rdb


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher and persistence retry worker with the app."""

    tasks = []
    if settings.outbox_publisher_enabled:
        tasks.append(asyncio.create_task(service.outbox_publisher()))
    if settings.persistence_retry_enabled:
        tasks.append(asyncio.create_task(service.persistence_retry_worker()))
    yield
    for task in tasks:
        task.cancel()
    await service.kafka.close()


app = FastAPI(title="Storefront Checkout", lifespan=lifespan)
instrument_app(app)

ERROR_RESPONSES = {
    400: {"model": ErrorBody},
    402: {"model": ErrorBody},
    409: {"model": ErrorBody},
    500: {"model": ErrorBody},
    502: {"model": ErrorBody},
}


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Bind the correlation id and record request count and latency."""

    trace_id = request.headers.get("x-correlation-id") or str(uuid4())
    trace_id_ctx.set(trace_id)
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
        response.headers["x-correlation-id"] = trace_id
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(CheckoutError)
async def checkout_error_handler(_: Request, exc: CheckoutError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Render schema failures as 400s in the checkout error shape."""

    problems = [{"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")} for err in exc.errors()]
    logger.warning("request rejected path=%s problems=%s", request.url.path, problems)
    if request.url.path == "/orders":
        message = "Missing required order or payment details."
    else:
        message = "Missing or malformed request fields."
    error = ValidationError(message, details=problems)
    return JSONResponse(status_code=error.status_code, content=error.to_body())


def enforce_admin_key(x_api_key: str | None) -> None:
    """Reject support calls that do not carry the configured admin key."""

    if not settings.admin_api_key:
        raise ConfigurationError("Internal server configuration error (admin).")
    if x_api_key != settings.admin_api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def enforce_token_bucket(rdb: redis.Redis, client_key: str) -> None:
    # Redis token bucket (capacity = refill rate = limit per minute).
    key = f"tokenbucket:checkout:{client_key}"
    now = time()
    capacity = float(settings.rate_limit_per_minute)
    refill_per_sec = capacity / 60.0

    try:
        values = rdb.hmget(key, "tokens", "updated_at")
    except redis.RedisError as exc:
        logger.warning("rate_limit_read_failed: %s", exc)
        return
    tokens = float(values[0]) if values[0] is not None else capacity
    updated_at = float(values[1]) if values[1] is not None else now
    elapsed = max(0.0, now - updated_at)
    tokens = min(capacity, tokens + elapsed * refill_per_sec)

    allowed = tokens >= 1.0
    if allowed:
        tokens -= 1.0
    try:
        rdb.hset(key, mapping={"tokens": tokens, "updated_at": now})
        rdb.expire(key, 120)
    except redis.RedisError as exc:
        logger.warning("rate_limit_write_failed: %s", exc)
    if not allowed:
        raise HTTPException(status_code=429, detail="rate limit exceeded")


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _idempotency_cache_key(order_id: str, payment_reference: str) -> str:
    # Scoped by payment so a reused order id cannot read another buyer's confirmation.
    return f"idempotency:order:{order_id}:{payment_reference}"


@app.post(
    "/orders",
    response_model=OrderConfirmation,
    response_model_exclude_none=True,
    responses=ERROR_RESPONSES,
)
async def place_order(
    req: OrderRequest,
    svc: OrderPlacementService = Depends(get_service),
    cache: redis.Redis = Depends(get_redis),
):
    """Verify payment, buy the shipping label, store the order, confirm."""

    cache_key = _idempotency_cache_key(req.order_id, req.payment_reference)
    try:
        cached = cache.get(cache_key)
        if cached:
            return json.loads(cached)
    except redis.RedisError as exc:
        logger.warning("idempotency_cache_read_failed: %s", exc)

    confirmation = await svc.place_order(req)
    try:
        cache.setex(
            cache_key,
            settings.idempotency_ttl_seconds,
            confirmation.model_dump_json(by_alias=True, exclude_none=True),
        )
    except redis.RedisError as exc:
        logger.warning("idempotency_cache_write_failed: %s", exc)
    return confirmation


@app.get("/orders/{order_id}", response_model=PlacementStatusResponse, response_model_exclude_none=True)
def get_order(order_id: str, svc: OrderPlacementService = Depends(get_service)):
    """Current saga state for one client order id."""

    placement = svc.get_placement(order_id)
    if placement is None:
        raise HTTPException(status_code=404, detail="order not found")
    return PlacementStatusResponse(
        order_id=placement.order_id,
        state=placement.state,
        payment_reference=placement.payment_reference,
        tracking_number=placement.tracking_number,
        label_url=placement.label_url,
        document_id=placement.document_id,
        updated_at=placement.updated_at,
    )


@app.post("/payment-intents", response_model=PaymentIntentResponse, responses=ERROR_RESPONSES)
async def create_payment_intent(
    req: PaymentIntentRequest,
    request: Request,
    svc: OrderPlacementService = Depends(get_service),
    cache: redis.Redis = Depends(get_redis),
    idempotency_key: str | None = Header(default=None),
):
    """Create the payment intent the checkout page confirms in the browser."""

    enforce_token_bucket(cache, _client_key(request))
    intent = await svc.payments.create_payment_intent(
        amount_minor=req.amount,
        currency=req.currency,
        customer_name=req.customer_name,
        customer_email=req.customer_email,
        shipping_address=req.shipping_address.model_dump() if req.shipping_address else None,
        idempotency_key=idempotency_key,
    )
    return PaymentIntentResponse(client_secret=intent.client_secret)


@app.post("/shipping/rates", response_model=RatesResponse, responses=ERROR_RESPONSES)
async def shipping_rates(
    req: RatesRequest,
    request: Request,
    svc: OrderPlacementService = Depends(get_service),
    cache: redis.Redis = Depends(get_redis),
):
    """Quote shipping rates for the cart's parcels."""

    enforce_token_bucket(cache, _client_key(request))
    rates = await svc.shipping.get_rates(req.address_from, req.address_to, req.parcels)
    return RatesResponse(rates=[RateOut(**asdict(rate)) for rate in rates])


@app.post("/shipping/track", response_model=TrackingResponse, responses=ERROR_RESPONSES)
async def track_shipment(req: TrackShipmentRequest, svc: OrderPlacementService = Depends(get_service)):
    """Tracking status and history for a purchased label."""

    details = await svc.shipping.track_shipment(req.carrier, req.tracking_number)
    return TrackingResponse(
        status=details.status,
        history=[TrackingEventOut(**asdict(event)) for event in details.history],
        eta=details.eta,
    )


@app.get("/reconciliation", response_model=ReconciliationReport)
def reconciliation(
    limit: int = 100,
    stale_after_seconds: int = 300,
    svc: OrderPlacementService = Depends(get_service),
    x_api_key: str | None = Header(default=None),
):
    """Placements support has to resolve: paid-but-unlabeled, unstored, or stuck."""

    enforce_admin_key(x_api_key)
    items = [
        ReconciliationItem(
            order_id=placement.order_id,
            state=placement.state,
            payment_reference=placement.payment_reference,
            label_transaction_id=placement.label_transaction_id,
            tracking_number=placement.tracking_number,
            failure_details=placement.failure_details,
            persist_attempts=placement.persist_attempts,
            updated_at=placement.updated_at,
        )
        for placement in svc.reconciliation_report(limit=limit, stale_after_seconds=stale_after_seconds)
    ]
    return ReconciliationReport(count=len(items), items=items)


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
