"""
Order Pipeline — 注文照会 (キャッシュアサイド)

1. キャッシュを見る。ヒットしたら TTL を延長して返す。
2. ミスなら DB を見る。見つかればキャッシュに載せて返す。
3. どちらにも無ければ None。

「処理中」と「存在しない」は区別しない。DB の行は
コンシューマが最初に処理した時点で初めて作られるため。
"""

import logging

from pydantic import ValidationError as ModelValidationError

from .cache import OrderCache
from .commands import validate_order_id
from .errors import CacheUnavailable
from .events import OrderRecord, is_pending
from .store import OrderStore

logger = logging.getLogger(__name__)


class OrderLookup:
    __slots__ = ("record", "cache_hit")

    def __init__(self, record: OrderRecord, cache_hit: bool) -> None:
        self.record = record
        self.cache_hit = cache_hit

    def to_dict(self) -> dict:
        body = self.record.model_dump(mode="json")
        body["cache_hit"] = self.cache_hit
        return body


async def _from_cache(cache: OrderCache, order_id: str) -> OrderRecord | None:
    try:
        cached = await cache.get(order_id)
    except CacheUnavailable as exc:
        logger.warning("Cache read error for order %s: %s", order_id, exc)
        return None
    if cached is None or is_pending(cached):
        return None

    try:
        record = OrderRecord.model_validate(cached)
    except ModelValidationError:
        logger.warning("Ignoring unreadable cache entry for order %s", order_id)
        return None

    # スライディング TTL
    try:
        await cache.refresh(order_id)
    except CacheUnavailable as exc:
        logger.warning("Failed to extend cache TTL for order %s: %s", order_id, exc)
    return record


async def get_order(cache: OrderCache, store: OrderStore, order_id) -> OrderLookup | None:
    order_id = validate_order_id(order_id)

    record = await _from_cache(cache, order_id)
    if record is not None:
        logger.debug("Order %s served from cache", order_id)
        return OrderLookup(record, cache_hit=True)

    record = await store.find_order(order_id)
    if record is None:
        return None

    try:
        await cache.set(order_id, record.model_dump(mode="json"))
    except CacheUnavailable as exc:
        logger.warning("Failed to cache order %s: %s", order_id, exc)

    logger.debug("Order %s served from database", order_id)
    return OrderLookup(record, cache_hit=False)
