"""Reconciliation service API + outbox lifecycle.

Learner-facing payment endpoints trust the `x-learner-id` header set by the
upstream auth layer; admin and ops endpoints require the API key.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request, Response

from learnpay.common.config import settings
from learnpay.common.db import SessionLocal
from learnpay.common.errors import LearnPayError, NotOwner
from learnpay.common.logging import configure_logging, trace_id_ctx
from learnpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from learnpay.common.money import to_minor
from learnpay.common.ratelimit import enforce_token_bucket
from learnpay.common.startup import log_startup_config
from learnpay.common.tracing import instrument_app, setup_tracing
from learnpay.services.gateway_adapter.service import RazorpayGateway
from learnpay.services.reconciliation.fee_plans import FeePlanService
from learnpay.services.reconciliation.schemas import (
    CoursePurchaseRequest,
    FeePlanCreateRequest,
    OfflinePaymentRequest,
    PayableConfirmRequest,
    PayableIntentRequest,
)
from learnpay.services.reconciliation.service import ReconciliationService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "service_name",
        "postgres_dsn",
        "kafka_bootstrap_servers",
        "redis_url",
        "gateway_base_url",
        "gateway_key_id",
        "gateway_key_secret",
        "gateway_webhook_secret",
        "gateway_timeout_seconds",
        "default_currency",
        "rate_limit_per_minute",
        "obligation_update_retries",
        "outbox_enabled",
    ],
)
service = ReconciliationService(
    SessionLocal,
    RazorpayGateway.from_settings(),
    service_name=settings.service_name,
    update_retries=settings.obligation_update_retries,
)
fee_plans = FeePlanService(SessionLocal, service, default_currency=settings.default_currency)


def enforce_api_key(x_api_key: str | None) -> None:
    """Simple API-key gate for admin and ops endpoints."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def require_learner(x_learner_id: str | None) -> str:
    if not x_learner_id:
        raise HTTPException(status_code=401, detail="missing learner identity")
    return x_learner_id


def bind_trace(x_trace_id: str | None) -> str:
    trace_id = x_trace_id or str(uuid4())
    trace_id_ctx.set(trace_id)
    return trace_id


def _http_error(exc: LearnPayError) -> HTTPException:
    """Map service errors to HTTP responses."""

    return HTTPException(status_code=exc.status_code, detail={"code": exc.code, "message": exc.message})


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox publisher with application lifecycle."""

    publisher_task = asyncio.create_task(service.outbox_publisher()) if settings.outbox_enabled else None
    yield
    if publisher_task is not None:
        publisher_task.cancel()
    await service.kafka.close()


app = FastAPI(title="LearnPay Reconciliation Service", lifespan=lifespan)
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


@app.get("/health")
def health():
    """Liveness check for the container orchestrator."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.post("/payable-intent")
async def create_payable_intent(
    req: PayableIntentRequest,
    x_learner_id: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Create a gateway order for (part of) an obligation's due amount."""

    learner_id = require_learner(x_learner_id)
    enforce_token_bucket(learner_id)
    bind_trace(x_trace_id)
    try:
        requested = None
        if req.amount is not None:
            currency = service.get_obligation(req.obligation_id).currency
            requested = to_minor(req.amount, currency)
        intent = await service.create_payment_intent(req.obligation_id, requested, learner_id=learner_id)
    except LearnPayError as exc:
        raise _http_error(exc) from exc
    return {
        "intent": intent,
        "checkout": {"key_id": settings.gateway_key_id, "order_id": intent.remote_order_id},
    }


@app.post("/payable-confirm")
def confirm_payable(
    req: PayableConfirmRequest,
    x_learner_id: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Verify a checkout confirmation and apply it exactly once.

    Repeating a confirmation is safe: it answers `replayed: true` without a
    second ledger entry, and its `enrollment` field reports the grant as it
    stands now (`already_granted`) rather than echoing the first response.
    """

    learner_id = require_learner(x_learner_id)
    enforce_token_bucket(learner_id)
    bind_trace(x_trace_id)
    try:
        if service.get_obligation(req.obligation_id).learner_id != learner_id:
            raise NotOwner("you can only confirm payments for your own obligations")
        return service.verify_and_apply_online_payment(
            req.remote_order_id,
            req.remote_payment_id,
            req.signature,
            obligation_id=req.obligation_id,
        )
    except LearnPayError as exc:
        raise _http_error(exc) from exc


@app.post("/course-orders")
async def create_course_order(
    req: CoursePurchaseRequest,
    x_learner_id: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Open a course purchase and return its payment intent."""

    learner_id = require_learner(x_learner_id)
    enforce_token_bucket(learner_id)
    bind_trace(x_trace_id)
    try:
        intent = await service.start_course_purchase(learner_id, req.course_id)
    except LearnPayError as exc:
        raise _http_error(exc) from exc
    return {
        "intent": intent,
        "checkout": {"key_id": settings.gateway_key_id, "order_id": intent.remote_order_id},
    }


@app.post("/webhooks/gateway")
async def gateway_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Apply a signed gateway webhook delivery."""

    bind_trace(x_trace_id)
    body = await request.body()
    try:
        confirmation = service.apply_gateway_webhook(body, x_razorpay_signature)
    except LearnPayError as exc:
        raise _http_error(exc) from exc
    if confirmation is None:
        return {"ok": True, "ignored": True}
    return {"ok": True, "ignored": False, "confirmation": confirmation}


@app.post("/offline-payment")
def record_offline_payment(
    req: OfflinePaymentRequest,
    x_api_key: str | None = Header(default=None),
    x_admin_id: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Record a manual payment collected outside the gateway."""

    enforce_api_key(x_api_key)
    bind_trace(x_trace_id)
    try:
        currency = service.get_obligation(req.obligation_id).currency
        return service.apply_payment(
            req.obligation_id,
            to_minor(req.amount, currency),
            req.channel,
            req.reference,
            recorded_by=x_admin_id or "admin",
            note=req.note,
        )
    except LearnPayError as exc:
        raise _http_error(exc) from exc


@app.post("/fee-plans")
def create_fee_plan(
    req: FeePlanCreateRequest,
    x_api_key: str | None = Header(default=None),
    x_admin_id: str | None = Header(default=None),
    x_trace_id: str | None = Header(default=None),
):
    """Create one-time or monthly fee installments for a learner."""

    enforce_api_key(x_api_key)
    bind_trace(x_trace_id)
    try:
        return fee_plans.create_fee_plan(req, created_by=x_admin_id or "admin")
    except LearnPayError as exc:
        raise _http_error(exc) from exc


@app.get("/fee-records")
def get_fee_records(
    learner_id: str | None = None,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 10,
    x_api_key: str | None = Header(default=None),
):
    """Admin listing of fee installments with summary and pagination."""

    enforce_api_key(x_api_key)
    return fee_plans.list_fee_records(learner_id=learner_id, status=status, search=search, page=page, limit=limit)


@app.get("/fee-records/mine")
def get_my_fee_records(
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
    x_learner_id: str | None = Header(default=None),
):
    learner_id = require_learner(x_learner_id)
    return fee_plans.list_fee_records(learner_id=learner_id, status=status, page=page, limit=limit)


@app.get("/obligations/{obligation_id}")
def get_obligation(
    obligation_id: str,
    x_learner_id: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
):
    """Obligation view plus ledger; learners only see their own."""

    if x_api_key is not None:
        enforce_api_key(x_api_key)
    else:
        learner_id = require_learner(x_learner_id)
    try:
        detail = service.obligation_detail(obligation_id)
        if x_api_key is None and detail.obligation.learner_id != learner_id:
            raise NotOwner("you can only view your own obligations")
    except LearnPayError as exc:
        raise _http_error(exc) from exc
    return detail


@app.get("/obligations/{obligation_id}/receipts/{entry_id}")
def download_receipt(
    obligation_id: str,
    entry_id: str,
    x_learner_id: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
):
    """Receipt document for one ledger entry; owner or API key only."""

    learner_id = None
    if x_api_key is not None:
        enforce_api_key(x_api_key)
    else:
        learner_id = require_learner(x_learner_id)
    try:
        receipt = service.render_receipt(obligation_id, entry_id, learner_id=learner_id)
    except LearnPayError as exc:
        raise _http_error(exc) from exc
    return Response(
        content=receipt.content,
        media_type=receipt.media_type,
        headers={"Content-Disposition": f"attachment; filename=Receipt-{receipt.receipt_number}.pdf"},
    )


@app.get("/receipts/mine")
def get_my_receipts(limit: int = 100, x_learner_id: str | None = Header(default=None)):
    learner_id = require_learner(x_learner_id)
    return {"receipts": service.list_receipts(learner_id, limit=limit)}


@app.get("/reconciliation")
def get_reconciliation_report(limit: int = 1000, x_api_key: str | None = Header(default=None)):
    """Ledger conservation and enrollment consistency report."""

    enforce_api_key(x_api_key)
    return service.reconciliation_report(limit=limit)


@app.post("/ops/enrollments/repair")
def repair_enrollments(limit: int = 1000, x_api_key: str | None = Header(default=None)):
    """Heal one-sided enrollment links and grant missing paid enrollments."""

    enforce_api_key(x_api_key)
    return service.repair_enrollments(limit=limit)
