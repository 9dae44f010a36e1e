from __future__ import annotations
import json
import time
import uuid
from typing import List, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from loguru import logger
from redis.exceptions import RedisError
from sqlalchemy import desc, select

from . import config
from .checkout import (
    BuyerInfo, CheckoutOrchestrator, LineItem, RequestContext,
)
from .errors import (
    DomainError, ErrorCode, InsufficientInventoryError, InvalidRequestError,
    NotFoundError, ProviderUnavailableError, UnauthorizedError,
)
from .helpers import ct_equal, to_iso
from .infra.sql import Database, make_async_engine
from .log import setup_logging
from .middleware import IdempotencyMiddleware, RateLimitMiddleware
from .model.ledger import AvailabilityLedger
from .model.orm import (
    Order, Payment, Ticket, TicketType, WebhookAuditLog, create_schema,
)
from .providers.mockpay import MockPay, sign
from .reconcile import Reconciler
from .settlement import SettlementHandler

app = FastAPI(
    title="boxoffice",
    default_response_class=ORJSONResponse,
)
# last added runs first
app.add_middleware(IdempotencyMiddleware)
app.add_middleware(RateLimitMiddleware)


# ----------------------------
# Dependencies
# ----------------------------
def get_db(request: Request) -> Database:
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise RuntimeError("database not initialized")
    return db


def get_redis(request: Request) -> redis.Redis:
    r = getattr(request.app.state, "redis", None)
    if r is None:
        raise RuntimeError("redis not initialized")
    return r


def get_http(request: Request) -> httpx.AsyncClient:
    return request.app.state.http


def get_ledger(request: Request,
               r: redis.Redis = Depends(get_redis)) -> AvailabilityLedger:
    ttl = getattr(request.app.state, "hold_ttl", config.HOLD_TTL_SECONDS)
    return AvailabilityLedger(r, ttl)


def get_orchestrator(
    request: Request,
    db: Database = Depends(get_db),
    ledger: AvailabilityLedger = Depends(get_ledger),
) -> CheckoutOrchestrator:
    session_ttl = getattr(request.app.state, "session_ttl",
                          config.CHECKOUT_SESSION_TTL_SECONDS)
    return CheckoutOrchestrator(db, ledger, session_ttl_seconds=session_ttl)


def get_settlement(
    request: Request,
    db: Database = Depends(get_db),
    ledger: AvailabilityLedger = Depends(get_ledger),
    r: redis.Redis = Depends(get_redis),
    http: httpx.AsyncClient = Depends(get_http),
) -> SettlementHandler:
    return SettlementHandler(
        db, ledger, r, http,
        enqueue=getattr(request.app.state, "enqueue", None),
        adapters=getattr(request.app.state, "adapters", None),
    )


def require_admin(request: Request) -> None:
    token = request.headers.get("x-admin-token") or ""
    if not token or not ct_equal(token, config.ADMIN_TOKEN):
        raise UnauthorizedError("admin token required")


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    setup_logging(config.LOG_LEVEL, config.LOG_JSON)
    config.validate_environment()
    logger.info(
        f"boxoffice starting ({config.ENVIRONMENT}): hold ttl "
        f"{config.HOLD_TTL_SECONDS}s, checkout ttl "
        f"{config.CHECKOUT_SESSION_TTL_SECONDS}s"
    )


@app.on_event("startup")
async def _db_init():
    if getattr(app.state, "db", None) is None:
        app.state.db = make_async_engine(config.DATABASE_URL)
    await create_schema(app.state.db.engine)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )


@app.on_event("startup")
async def _redis_start():
    app.state.redis = redis.from_url(
        config.REDIS_URL,
        decode_responses=True,
        max_connections=config.REDIS_MAX_CONN,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
        retry_on_timeout=True,
    )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    db = getattr(app.state, "db", None)
    if db is not None:
        await db.dispose()
        app.state.db = None


# ----------------------------
# Error mapping
# ----------------------------
@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    content = {"code": exc.code.value, "detail": exc.message}
    if isinstance(exc, InsufficientInventoryError):
        content["ticketTypeId"] = exc.ticket_type_id
        content["available"] = exc.available
    return ORJSONResponse(content, status_code=exc.status_code)


@app.exception_handler(ProviderUnavailableError)
async def _provider_unavailable(request: Request,
                                exc: ProviderUnavailableError):
    logger.warning(f"{request.url.path}: {exc}")
    return ORJSONResponse(
        {"code": "PROVIDER_UNAVAILABLE", "detail": str(exc)},
        status_code=503,
    )


@app.exception_handler(RedisError)
async def _redis_unavailable(request: Request, exc: RedisError):
    logger.error(f"{request.url.path}: redis unavailable: {exc}")
    return ORJSONResponse(
        {"code": "STORE_UNAVAILABLE", "detail": "try again shortly"},
        status_code=503,
    )


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    logger.warning(f"{request.url.path}: validation error: {exc.errors()}")
    return ORJSONResponse(
        {"code": ErrorCode.INVALID_REQUEST.value,
         "detail": "malformed request body"},
        status_code=400,
    )


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception):
    logger.opt(exception=exc).error(
        f"{request.url.path}: unhandled {type(exc).__name__}"
    )
    return ORJSONResponse(
        {"code": "INTERNAL_ERROR", "detail": "Internal server error"},
        status_code=500,
    )


# ----------------------------
# Checkout
# ----------------------------
def _parse_line_items(raw) -> List[LineItem]:
    if not isinstance(raw, list) or not raw:
        raise InvalidRequestError("items must be a non-empty list")
    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise InvalidRequestError("invalid line item")
        tt_id = entry.get("ticketTypeId") or entry.get("ticket_type_id")
        qty = entry.get("quantity", entry.get("qty"))
        if not tt_id or not isinstance(qty, int) or isinstance(qty, bool):
            raise InvalidRequestError(
                "each item needs ticketTypeId and an integer quantity"
            )
        items.append(LineItem(str(tt_id), qty))
    return items


@app.post("/checkout/session", status_code=201)
@app.post("/checkout", status_code=201)
async def create_checkout_session(
    payload: dict,
    request: Request,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    event_id = payload.get("eventId") or payload.get("event_id")
    if not event_id:
        raise InvalidRequestError("eventId is required")
    items = _parse_line_items(payload.get("items"))
    buyer = payload.get("buyer") or {}
    if not isinstance(buyer, dict):
        raise InvalidRequestError("buyer must be an object")

    session = await orchestrator.create_checkout_session(
        str(event_id),
        items,
        BuyerInfo(
            email=(buyer.get("email") or "").strip(),
            name=buyer.get("name"),
            phone=buyer.get("phone"),
        ),
        RequestContext(
            ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        ),
    )
    return session.to_dict()


@app.get("/checkout/{order_id}")
async def get_checkout(
    order_id: str,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_order_summary(order_id)


@app.post("/checkout/{order_id}/pay")
async def start_payment(
    order_id: str,
    payload: Optional[dict] = None,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
    http: httpx.AsyncClient = Depends(get_http),
):
    gateway = (payload or {}).get("gateway") or config.DEFAULT_GATEWAY
    return await orchestrator.start_payment(order_id, str(gateway), http)


@app.post("/checkout/{order_id}/cancel")
async def cancel_checkout(
    order_id: str,
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.cancel_order(order_id)
    return {"ok": True, "orderId": order_id, "status": "CANCELLED"}


# ----------------------------
# Orders & inventory
# ----------------------------
@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: Database = Depends(get_db)):
    async with db.begin() as session:
        order = await session.get(Order, order_id)
        if order is None:
            # webhook may still be processing; let the client keep polling
            raise NotFoundError("order not found")
        tickets = (await session.execute(
            select(Ticket).where(Ticket.order_id == order_id)
            .order_by(Ticket.created_at)
        )).scalars().all()
        return {
            "orderId": order.id,
            "status": order.status,
            "total": order.total,
            "currency": order.currency,
            "platformFee": order.platform_fee_amount,
            "organizerIncome": order.organizer_income_amount,
            "createdAt": to_iso(order.created_at),
            "expiresAt": to_iso(order.expires_at),
            "paidAt": to_iso(order.paid_at),
            "payment": {
                "gateway": order.payment.gateway,
                "status": order.payment.status,
            } if order.payment else None,
            "items": [
                {"ticketTypeId": i.ticket_type_id, "quantity": i.quantity,
                 "unitPrice": i.unit_price}
                for i in order.items
            ],
            "tickets": [
                {"code": t.qr_code, "ticketTypeId": t.ticket_type_id,
                 "status": t.status}
                for t in tickets
            ],
        }


@app.get("/api/inventory/{event_id}")
async def get_inventory(
    event_id: str,
    db: Database = Depends(get_db),
    ledger: AvailabilityLedger = Depends(get_ledger),
):
    async with db.begin() as session:
        rows = (await session.execute(
            select(TicketType).where(TicketType.event_id == event_id)
            .order_by(TicketType.id)
        )).scalars().all()
    if not rows:
        raise NotFoundError("no ticket types for this event")
    items = []
    for tt in rows:
        held = await ledger.live_reservations(event_id, tt.id)
        items.append({
            "ticketTypeId": tt.id,
            "name": tt.name,
            "price": tt.price,
            "currency": tt.currency,
            "capacity": tt.capacity,
            "sold": tt.sold,
            "held": held,
            "available": max(0, tt.capacity - tt.sold - held),
        })
    return {"eventId": event_id, "items": items}


# ----------------------------
# Webhooks (all providers)
# ----------------------------
@app.post("/webhooks/{gateway}")
async def provider_webhook(
    gateway: str,
    request: Request,
    handler: SettlementHandler = Depends(get_settlement),
):
    payload = await request.body()
    result = await handler.handle_provider_notification(
        gateway, payload, dict(request.headers)
    )
    return result.to_dict()


# ----------------------------
# MockPay (dev provider)
# ----------------------------
MOCK_KINDS = {"succeeded", "failed", "canceled", "refunded"}


@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str,
    payload: dict,
    db: Database = Depends(get_db),
    http: httpx.AsyncClient = Depends(get_http),
):
    kind = payload.get("t")
    if kind not in MOCK_KINDS:
        raise InvalidRequestError("invalid kind")

    async with db.begin() as session:
        payment = (await session.execute(
            select(Payment).where(Payment.gateway_session_id == psid)
        )).scalar_one_or_none()
        if payment is None:
            raise NotFoundError("payment session not found")
        order_id, amount, currency = (
            payment.order_id, payment.amount, payment.currency
        )

    event = {
        "type": f"payment.{kind}",
        "payment_session_id": psid,
        "order_id": order_id,
        "amount": amount,
        "currency": currency,
        "created_at": int(time.time()),
        "idempotency_key": f"evt_{uuid.uuid4().hex}",
    }
    body = json.dumps(event).encode()
    adapter = MockPay()
    try:
        resp = await http.post(
            config.MOCK_WEBHOOK_URL,
            content=body,
            headers={
                adapter.signature_header: sign(body, adapter.secret),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the buyer can emit again
        logger.warning(f"mockpay webhook delivery failed: {e}")
        return {"ok": False, "orderId": order_id, "delivered": False}
    return {
        "ok": resp.status_code < 400,
        "orderId": order_id,
        "delivered": True,
        "webhookStatus": resp.status_code,
    }


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/reconcile", dependencies=[Depends(require_admin)])
async def admin_reconcile(
    request: Request,
    db: Database = Depends(get_db),
    ledger: AvailabilityLedger = Depends(get_ledger),
):
    reconciler = Reconciler(
        db, ledger, enqueue=getattr(request.app.state, "enqueue", None)
    )
    return await reconciler.run_once()


@app.get("/admin/webhooks", dependencies=[Depends(require_admin)])
async def admin_webhooks(limit: int = 100,
                         gateway: Optional[str] = None,
                         db: Database = Depends(get_db)):
    stmt = select(WebhookAuditLog).order_by(desc(WebhookAuditLog.id)) \
        .limit(max(1, min(limit, 500)))
    if gateway:
        stmt = stmt.where(WebhookAuditLog.gateway == gateway)
    async with db.begin() as session:
        rows = (await session.execute(stmt)).scalars().all()
        items = [{
            "id": w.id,
            "gateway": w.gateway,
            "eventType": w.event_type,
            "verified": w.verified,
            "orderId": w.order_id,
            "providerPaymentId": w.provider_payment_id,
            "outcome": w.outcome,
            "createdAt": to_iso(w.created_at),
        } for w in rows]
    return {"items": items, "limit": limit}
