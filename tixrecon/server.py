from __future__ import annotations

import json
import logging
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse
from starlette.middleware.sessions import SessionMiddleware

from .config import Settings
from .gateway import HttpGateway, PaymentGateway
from .helpers import bearer_token, ct_equal, is_valid_email, new_order_id
from .infra import timings
from .infra.logs import configure_logging
from .infra.sql import make_database
from .model.audit import AuditLog
from .model.db import Base
from .model.receipts import new_store
from .model.stock import StockLedger
from .model.tickets import TicketIssuer
from .model.transactions import TransactionStore
from .reconcile import Reconciler
from .status import Status

log = logging.getLogger(__name__)

router = APIRouter()


# ----------------------------
# Dependencies
# ----------------------------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_reconciler(request: Request) -> Reconciler:
    rec = getattr(request.app.state, "reconciler", None)
    if rec is None:
        raise RuntimeError("Reconciler not initialized")
    return rec


def require_admin(request: Request) -> str:
    user = request.session.get("admin_user")
    if not user:
        raise HTTPException(status_code=401, detail="admin login required")
    return user


# ----------------------------
# Webhook endpoint (gateway push)
# ----------------------------
@router.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    rec: Reconciler = Depends(get_reconciler),
):
    # always 200: anything else makes the gateway retry in a storm
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError:
        log.warning("[webhook] unparseable body (%d bytes)", len(body))
        return {"status": "error"}
    if not isinstance(payload, dict):
        log.warning("[webhook] unexpected payload type %s",
                    type(payload).__name__)
        return {"status": "error"}

    outcome = await rec.handle_notification(payload)
    return {"status": outcome.disposition.value}


@router.get("/payments/webhook")
async def payments_webhook_health():
    return {"status": "ok", "message": "webhook endpoint is active"}


# ----------------------------
# Cron: sweep
# ----------------------------
@router.api_route("/api/cron/reconcile", methods=["GET", "POST"])
async def cron_reconcile(
    request: Request,
    settings: Settings = Depends(get_settings),
    rec: Reconciler = Depends(get_reconciler),
):
    token = bearer_token(request.headers.get("authorization"))
    # no configured secret means nobody gets in
    if not settings.cron_secret or not ct_equal(token, settings.cron_secret):
        raise HTTPException(status_code=401, detail="Unauthorized")
    report = await rec.sweep()
    return {"status": "ok", **report.as_dict()}


# ----------------------------
# Storefront boundary: place an order (pending, no stock taken yet)
# ----------------------------
@router.post("/api/checkout")
async def create_checkout(
    payload: dict,
    settings: Settings = Depends(get_settings),
    rec: Reconciler = Depends(get_reconciler),
):
    category_id = str(payload.get("category_id") or "").strip()
    customer_email = (payload.get("customer_email") or "").strip()
    try:
        qty = int(payload.get("quantity", 1))
    except (TypeError, ValueError):
        raise HTTPException(400, detail="quantity must be an integer")

    if not is_valid_email(customer_email):
        raise HTTPException(
            400,
            detail="customer_email is required and must be a valid email "
                   "address"
        )
    if not 1 <= qty <= settings.max_tickets_per_order:
        raise HTTPException(
            400,
            detail=f"quantity must be between 1 and "
                   f"{settings.max_tickets_per_order}"
        )

    stock = await rec.stock.get(category_id)
    if stock is None:
        raise HTTPException(400, detail="invalid ticket category")
    if stock.remaining_stock < qty:
        raise HTTPException(
            409, detail=f"not enough tickets left ({stock.remaining_stock})"
        )

    txn = await rec.transactions.create(
        order_id=new_order_id(category_id),
        category_id=category_id,
        quantity=qty,
        amount=stock.price * qty,
        customer_email=customer_email,
        customer_name=(payload.get("customer_name") or "").strip(),
        customer_phone=(payload.get("customer_phone") or "").strip(),
    )
    return {
        "order_id": txn.order_id,
        "status": txn.status.value,
        "amount": txn.amount,
        "currency": txn.currency,
    }


# ----------------------------
# Public order status (polled by the payment page) + customer recheck
# ----------------------------
@router.get("/api/transactions/{order_id}")
async def get_transaction(
    order_id: str, rec: Reconciler = Depends(get_reconciler)
):
    txn = await rec.transactions.fetch_by_order_id(order_id)
    if txn is None:
        raise HTTPException(404, detail="Transaction not found")
    out = txn.as_dict()
    out["tickets"] = []
    if txn.status == Status.PAID:
        out["tickets"] = [
            t.as_dict() for t in await rec.tickets.list_for_transaction(txn.id)
        ]
    return out


@router.post("/api/transactions/{order_id}/recheck")
async def customer_recheck(
    order_id: str, rec: Reconciler = Depends(get_reconciler)
):
    result = await rec.recheck(order_id)
    return result.as_dict()


@router.get("/api/inventory")
async def get_inventory(rec: Reconciler = Depends(get_reconciler)):
    return {"items": [s.as_dict() for s in await rec.stock.inventory()]}


# ----------------------------
# Admin
# ----------------------------
@router.post("/admin/login")
async def admin_login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    settings: Settings = Depends(get_settings),
):
    ok_user = ct_equal(username.strip(), settings.admin_username)
    ok_pass = ct_equal(password, settings.admin_password)
    if not (ok_user and ok_pass):
        log.warning("[admin] failed login for %r", username.strip())
        raise HTTPException(401, detail="Invalid credentials.")
    request.session["admin_user"] = username.strip()
    return {"ok": True, "user": username.strip()}


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


@router.post("/api/admin/transactions/{order_id}/recheck")
async def admin_recheck(
    order_id: str,
    admin: str = Depends(require_admin),
    rec: Reconciler = Depends(get_reconciler),
):
    result = await rec.recheck(order_id, actor=admin)
    return result.as_dict()


@router.post("/api/admin/transactions/{order_id}/override")
async def admin_override(
    order_id: str,
    payload: dict,
    admin: str = Depends(require_admin),
    rec: Reconciler = Depends(get_reconciler),
):
    result = await rec.override(
        order_id, actor=admin, reason=str(payload.get("reason") or "")
    )
    return result.as_dict()


@router.get("/api/admin/transactions")
async def admin_transactions(
    limit: int = 200,
    _: str = Depends(require_admin),
    rec: Reconciler = Depends(get_reconciler),
):
    items = await rec.transactions.list_recent(limit)
    return {"items": [t.as_dict() for t in items], "limit": limit}


@router.get("/api/admin/audit")
async def admin_audit(
    limit: int = 100,
    order_id: Optional[str] = None,
    _: str = Depends(require_admin),
    rec: Reconciler = Depends(get_reconciler),
):
    entries = await rec.audit.recent(limit=limit, order_id=order_id)
    return {"items": [e.as_dict() for e in entries], "limit": limit}


@router.get("/api/admin/receipts")
async def admin_receipts(
    limit: int = 100,
    _: str = Depends(require_admin),
    rec: Reconciler = Depends(get_reconciler),
):
    if rec.receipts is None:
        return {"items": [], "enabled": False, "limit": limit}
    items = await rec.receipts.recent(limit=limit)
    return {"items": items, "enabled": True, "limit": limit}


@router.get("/api/admin/timings")
async def admin_timings(_: str = Depends(require_admin)):
    return timings.snapshot()


# ----------------------------
# App factory
# ----------------------------
def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[PaymentGateway] = None,
) -> FastAPI:
    """
    Build the app. `gateway` replaces the HTTP status client (tests, demos);
    everything else is constructed from `settings` at startup.
    """
    settings = settings or Settings.from_env()

    app = FastAPI(
        title="TixRecon",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.state.settings = settings
    app.include_router(router)

    @app.on_event("startup")
    async def _logging_start():
        configure_logging(settings.log_level)
        log.info("TixRecon starting (receipts backend: %s)",
                 settings.receipt_backend)
        if not settings.gateway_server_key:
            log.warning("GATEWAY_SERVER_KEY is not configured: every "
                        "webhook will fail signature verification")

    @app.on_event("startup")
    async def _db_start():
        db = make_database(settings.database_url)
        await db.create_all(Base.metadata)
        app.state.db = db

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=settings.gateway_timeout,
            limits=httpx.Limits(
                max_connections=64, max_keepalive_connections=64
            ),
        )

    @app.on_event("startup")
    async def _redis_start():
        app.state.redis = None
        if settings.receipt_backend == "redis":
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=settings.redis_max_conn,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("startup")
    async def _reconciler_start():
        db = app.state.db
        app.state.reconciler = Reconciler(
            settings=settings,
            gateway=gateway or HttpGateway(
                app.state.http,
                base_url=settings.gateway_base_url,
                server_key=settings.gateway_server_key,
                timeout=settings.gateway_timeout,
            ),
            transactions=TransactionStore(db),
            stock=StockLedger(db),
            tickets=TicketIssuer(db, prefix=settings.ticket_prefix),
            audit=AuditLog(db),
            receipts=new_store(
                settings.receipt_backend, db=db, r=app.state.redis
            ),
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

    return app
