"""
Order Pipeline — 受付コマンド (Producer 側)

注文リクエストを検証し、重複でなければストリームに1件だけ追記する。
DB への書き込みはここでは行わない（コンシューマの責務）。

重複チェックの順序:
    1. キャッシュ order:<order_id>  (障害時は 2 にフォールバック)
    2. DB の UNIQUE キー            (障害時はストリーム追記を正とする)

分散ロックは使わないため、同時に来た2つのリクエストが両方とも
チェックを通過することはあり得る。その場合もコンシューマの upsert で
最終的に1行に収束する。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel

from .cache import OrderCache
from .errors import CacheUnavailable, DuplicateError, StoreUnavailable, ValidationError
from .events import (
    MAX_AMOUNT,
    ORDER_ID_PATTERN,
    OrderSubmitted,
    parse_amount,
    pending_marker,
    quantize,
)
from .store import OrderStore
from .stream import OrderStream

logger = logging.getLogger(__name__)


class Accepted(BaseModel):
    order_id: str
    amount: Decimal
    entry_id: str
    submitted_at: datetime


def validate_order_id(order_id) -> str:
    if not isinstance(order_id, str) or not ORDER_ID_PATTERN.match(order_id):
        raise ValidationError(
            "Invalid order_id format. Use alphanumeric characters, hyphens, "
            "or underscores (max 100 chars)"
        )
    return order_id


def validate_amount(amount) -> Decimal:
    value = parse_amount(amount)
    if value is None or value <= 0 or value > MAX_AMOUNT:
        raise ValidationError("Amount must be a positive number less than 1,000,000")
    value = quantize(value)
    if value <= 0:
        raise ValidationError("Amount must be a positive number less than 1,000,000")
    return value


async def ensure_not_duplicate(cache: OrderCache, store: OrderStore, order_id: str) -> None:
    try:
        cached = await cache.get(order_id)
    except CacheUnavailable as exc:
        logger.warning("Cache lookup failed for order %s, checking database: %s", order_id, exc)
        cached = None
    if cached is not None:
        raise DuplicateError(order_id, existing=cached)

    try:
        existing = await store.find_order(order_id)
    except StoreUnavailable:
        logger.warning("Database lookup failed for order %s, queueing anyway", order_id, exc_info=True)
        return
    if existing is not None:
        raise DuplicateError(order_id, status=existing.status.value)


async def submit_order(
    stream: OrderStream,
    cache: OrderCache,
    store: OrderStore,
    order_id,
    amount,
    request_ip: str | None = None,
    customer_id: str | None = None,
    description: str | None = None,
) -> Accepted:
    """
    注文受付コマンド

    1. 入力を検証（不正なら副作用なしで ValidationError）
    2. 重複チェック（キャッシュ → DB）
    3. ストリームに OrderSubmitted を追記（失敗は QueueUnavailable、リトライしない）
    4. 重複抑止マーカーをキャッシュに置く（ベストエフォート）
    """
    order_id = validate_order_id(order_id)
    value = validate_amount(amount)

    await ensure_not_duplicate(cache, store, order_id)

    event = OrderSubmitted(
        order_id=order_id,
        amount=value,
        submitted_at=datetime.now(timezone.utc),
        request_ip=request_ip,
        customer_id=customer_id,
        description=description,
    )
    entry_id = await stream.append(event.to_fields())
    logger.info("Order %s queued for processing (amount: %s, entry: %s)", order_id, value, entry_id)

    # コンシューマが先に書いた処理済みレコードは上書きしない
    try:
        await cache.add(order_id, pending_marker(event))
    except CacheUnavailable as exc:
        logger.warning("Failed to mark order %s as pending: %s", order_id, exc)

    return Accepted(
        order_id=order_id,
        amount=value,
        entry_id=entry_id,
        submitted_at=event.submitted_at,
    )
