from __future__ import annotations

import os
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import (
    ORJSONResponse, PlainTextResponse, RedirectResponse,
)
from pydantic import BaseModel

from .downloads import BASE_URL, resolve_download
from .errors import (
    FileUnavailable, InvalidDownloadToken, OrderNotFound,
    ProcessingFailed, ProviderError, ShelfpayError, Unauthorized,
    ValidationFailed,
)
from .fulfillment import FulfillmentDispatcher, set_shipping_status
from .helpers import ct_equal
from .infra import timings
from .infra.timings import timeit
from .logging_config import get_logger, setup_logging
from .mailer import Mailer
from .model.store import BACKEND as STORE_BACKEND
from .model.store import DocumentStore, new_store
from .model.types import CUSTOMERS, ORDERS, order_key
from .paystack import (
    PaymentAdapter, Paystack, build_initialize_payload,
)
from .reconciler import Reconciler

setup_logging()
log = get_logger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get(
    "DATABASE_URL", "sqlite+aiosqlite:///./shelfpay.db"
)
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
# empty disables the operator API
ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN", "")

MAX_LIST_LIMIT = 500

app = FastAPI(
    title="Shelfpay",
    default_response_class=ORJSONResponse,
)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    log.info("Shelfpay is starting up (store backend: %s)", STORE_BACKEND)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=100, max_keepalive_connections=100
        ),
    )


@app.on_event("startup")
async def _store_start():
    r = None
    if STORE_BACKEND == "redis":
        r = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "128")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    store = new_store(database_url=DATABASE_URL, r=r)
    await store.init()
    app.state.store = store


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _store_stop():
    store = getattr(app.state, "store", None)
    if store is not None:
        await store.close()
        app.state.store = None


# ----------------------------
# Dependencies
# ----------------------------
def get_store() -> DocumentStore:
    store = getattr(app.state, "store", None)
    if store is None:
        raise RuntimeError("document store not initialized")
    return store


def get_http() -> httpx.AsyncClient:
    http = getattr(app.state, "http", None)
    if http is None:
        raise RuntimeError("http client not initialized")
    return http


def get_provider(
    http: httpx.AsyncClient = Depends(get_http),
) -> PaymentAdapter:
    return Paystack(http)


_mailer: Optional[Mailer] = None


def get_mailer() -> Mailer:
    global _mailer
    if _mailer is None:
        _mailer = Mailer()
    return _mailer


def get_dispatcher(
    store: DocumentStore = Depends(get_store),
    mailer: Mailer = Depends(get_mailer),
) -> FulfillmentDispatcher:
    return FulfillmentDispatcher(store, mailer)


def get_reconciler(
    store: DocumentStore = Depends(get_store),
    provider: PaymentAdapter = Depends(get_provider),
    dispatcher: FulfillmentDispatcher = Depends(get_dispatcher),
) -> Reconciler:
    return Reconciler(store, provider, dispatcher)


def require_operator(authorization: Optional[str] = Header(None)) -> None:
    if not ADMIN_API_TOKEN:
        raise Unauthorized("operator API disabled")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized()
    if not ct_equal(token.strip(), ADMIN_API_TOKEN):
        raise Unauthorized()


# ----------------------------
# Error rendering
# ----------------------------
@app.exception_handler(ShelfpayError)
async def _shelfpay_error(request: Request, exc: ShelfpayError):
    return ORJSONResponse(exc.envelope(), status_code=exc.status_code)


# ----------------------------
# Request bodies
# ----------------------------
class VerifyRequest(BaseModel):
    reference: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ShippingUpdate(BaseModel):
    status: str


def _clamp(limit: int) -> int:
    return max(1, min(limit, MAX_LIST_LIMIT))


# ----------------------------
# Paystack: webhook (provider -> us)
# ----------------------------
@app.post("/api/paystack/webhook")
async def paystack_webhook(
    request: Request,
    reconciler: Reconciler = Depends(get_reconciler),
):
    payload = await request.body()
    headers = dict(request.headers)
    try:
        async with timeit("api.webhook"):
            return await reconciler.handle_webhook(payload, headers)
    except ShelfpayError:
        raise
    except Exception as e:
        log.exception("Webhook processing failed")
        raise ProcessingFailed() from e


# ----------------------------
# Paystack: client-initiated verification
# ----------------------------
@app.post("/api/paystack/verify")
async def paystack_verify(
    body: VerifyRequest,
    reconciler: Reconciler = Depends(get_reconciler),
):
    try:
        async with timeit("api.verify"):
            return await reconciler.handle_verification(
                body.reference, body.metadata
            )
    except ShelfpayError:
        raise
    except Exception as e:
        log.exception("Verification failed for %s", body.reference)
        raise ProcessingFailed() from e


# ----------------------------
# Paystack: initiate checkout
# ----------------------------
@app.post("/api/paystack/initiate")
async def paystack_initiate(
    request: Request,
    provider: PaymentAdapter = Depends(get_provider),
):
    try:
        body = await request.json()
    except ValueError:
        return ORJSONResponse({"error": "Invalid request body"},
                              status_code=400)
    try:
        payload = build_initialize_payload(body, base_url=BASE_URL)
        return await provider.initialize_transaction(payload)
    except ValidationFailed as e:
        return ORJSONResponse({"error": e.detail}, status_code=400)
    except ProviderError as e:
        return ORJSONResponse(
            {"error": e.detail, "detail": e.payload}, status_code=502
        )
    except ShelfpayError as e:
        log.error("Payment initialization failed: %s", e.detail)
        return ORJSONResponse(
            {"error": "Payment initialization failed", "detail": e.detail},
            status_code=e.status_code,
        )


# ----------------------------
# Secure download redemption
# ----------------------------
@app.get("/download/{token}")
async def download(token: str, store: DocumentStore = Depends(get_store)):
    try:
        url = await resolve_download(store, token)
    except (InvalidDownloadToken, FileUnavailable) as e:
        return PlainTextResponse(e.detail, status_code=e.status_code)
    return RedirectResponse(url=url, status_code=302)


# ----------------------------
# Operator API
# ----------------------------
@app.get("/api/orders/{reference}", dependencies=[Depends(require_operator)])
async def get_order(reference: str,
                    store: DocumentStore = Depends(get_store)):
    async with timeit("api.get_order"):
        doc = await store.get(ORDERS, order_key(reference))
    if doc is None:
        raise OrderNotFound()
    return doc


@app.get("/api/admin/orders", dependencies=[Depends(require_operator)])
async def api_admin_orders(limit: int = 200,
                           store: DocumentStore = Depends(get_store)):
    limit = _clamp(limit)
    items = await store.recent(ORDERS, limit=limit)
    return {"items": items, "limit": limit}


@app.post("/api/admin/orders/{reference}/shipping",
          dependencies=[Depends(require_operator)])
async def api_admin_set_shipping(
    reference: str,
    body: ShippingUpdate,
    store: DocumentStore = Depends(get_store),
    dispatcher: FulfillmentDispatcher = Depends(get_dispatcher),
):
    order, changed = await set_shipping_status(
        store, order_key(reference), body.status
    )
    notified = False
    if changed:
        log.info("[Order: %s] shipping status -> %s", order.id,
                 order.shipping_status)
        notified = await dispatcher.notify_shipped(order)
    return {
        "ok": True,
        "orderId": order.id,
        "shippingStatus": order.shipping_status,
        "changed": changed,
        "notified": notified,
    }


@app.get("/api/admin/customers", dependencies=[Depends(require_operator)])
async def api_admin_customers(limit: int = 200,
                              store: DocumentStore = Depends(get_store)):
    limit = _clamp(limit)
    items = await store.recent(CUSTOMERS, limit=limit)
    return {"items": items, "limit": limit}


@app.get("/api/admin/timings", dependencies=[Depends(require_operator)])
async def api_admin_timings():
    return timings.snapshot()
