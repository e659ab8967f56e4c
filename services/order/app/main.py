"""
Order Pipeline — FastAPI エントリーポイント

受付 (POST) と照会 (GET) の2つだけを公開する。
実際の処理は別プロセスのワーカー (app.worker) が非同期に行う。

┌────────┐  POST /orders  ┌─────────┐  XADD   ┌──────────────┐
│ Client │ ─────────────▶ │   API   │ ──────▶ │ orders_stream│
│        │                └────┬────┘         └──────┬───────┘
│        │  GET /orders/{id}   │ cache-aside         │ XREAD
│        │ ◀───────────────────┘                     ▼
└────────┘                                    ┌──────────────┐
                   Redis (order:<id>) ◀────── │    Worker    │ ──▶ PostgreSQL
                                              └──────────────┘
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .cache import OrderCache
from .errors import (
    AdmissionRejected,
    CacheUnavailable,
    DuplicateError,
    QueueUnavailable,
    StoreUnavailable,
    ValidationError,
)
from .settings import Settings
from .store import OrderStore
from .stream import OrderStream

logger = logging.getLogger(__name__)

stream: OrderStream | None = None
cache: OrderCache | None = None
store: OrderStore | None = None

_STATUS_BY_ERROR = {
    ValidationError: 400,
    DuplicateError: 409,
    QueueUnavailable: 503,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global stream, cache, store
    settings = Settings.from_env(os.environ)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
    engine = create_async_engine(settings.database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    stream = OrderStream(redis_pool, settings.stream_key)
    cache = OrderCache(redis_pool, settings.cache_ttl_seconds)
    store = OrderStore(async_session)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Pipeline API", lifespan=lifespan)


@app.exception_handler(AdmissionRejected)
async def admission_rejected(request: Request, exc: AdmissionRejected):
    body = exc.detail()
    body["timestamp"] = _now()
    return JSONResponse(status_code=_STATUS_BY_ERROR.get(type(exc), 400), content=body)


@app.exception_handler(StoreUnavailable)
async def store_unavailable(request: Request, exc: StoreUnavailable):
    logger.error("Database unavailable for %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=503,
        content={"error": "Database unavailable", "reason": "store_unavailable", "timestamp": _now()},
    )


# ── Request Models ───────────────────────────────


class SubmitOrderRequest(BaseModel):
    order_id: str | None = None
    amount: Decimal | float | str | None = None
    customer_id: str | None = None
    description: str | None = None


# ── 受付 ─────────────────────────────────────────


@app.post("/orders", status_code=201)
async def submit_order(req: SubmitOrderRequest, request: Request):
    """注文を受け付けてストリームに追記する"""
    if not req.order_id or req.amount is None:
        raise ValidationError("Missing required fields: order_id and amount")

    accepted = await commands.submit_order(
        stream, cache, store,
        req.order_id, req.amount,
        request_ip=request.client.host if request.client else None,
        customer_id=req.customer_id,
        description=req.description,
    )
    return {
        "status": "queued",
        "order_id": accepted.order_id,
        "amount": str(accepted.amount),
        "entry_id": accepted.entry_id,
        "message": "Order submitted for processing",
        "timestamp": accepted.submitted_at.isoformat(),
    }


# ── 照会 ─────────────────────────────────────────


@app.get("/orders/{order_id}")
async def get_order(order_id: str):
    """キャッシュ → DB の順に注文を取得する"""
    lookup = await queries.get_order(cache, store, order_id)
    if lookup is None:
        return JSONResponse(
            status_code=404,
            content={
                "error": "Order not found or not processed yet",
                "order_id": order_id,
                "suggestion": "Order may still be processing. Try again in a few seconds.",
            },
        )
    body = lookup.to_dict()
    body["retrieved_at"] = _now()
    return body


@app.get("/health")
async def health():
    services = {}
    try:
        await cache.ping()
        services["redis"] = "connected"
    except CacheUnavailable:
        services["redis"] = "disconnected"
    try:
        await store.ping()
        services["database"] = "connected"
    except StoreUnavailable:
        services["database"] = "disconnected"

    healthy = all(v == "connected" for v in services.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "degraded",
            "service": "order-pipeline",
            "timestamp": _now(),
            "services": services,
        },
    )
