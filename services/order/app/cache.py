"""
Order Pipeline — Redis キャッシュ

キー: order:<order_id>  値: JSON  TTL: スライディング（読み出しごとに延長）

キャッシュはベストエフォート。ここでは RedisError を CacheUnavailable に
変換するだけで、吸収するかどうかは呼び出し側が決める。
"""

import json

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import CacheUnavailable

DEFAULT_TTL_SECONDS = 3600


def cache_key(order_id: str) -> str:
    return f"order:{order_id}"


class OrderCache:
    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def get(self, order_id: str) -> dict | None:
        try:
            raw = await self.redis.get(cache_key(order_id))
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise CacheUnavailable(f"corrupt cache entry for {order_id}") from exc

    async def set(self, order_id: str, value: dict, ttl_seconds: int | None = None) -> None:
        payload = json.dumps(value, default=str)
        try:
            await self.redis.setex(cache_key(order_id), ttl_seconds or self.ttl_seconds, payload)
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc

    async def add(self, order_id: str, value: dict, ttl_seconds: int | None = None) -> bool:
        """キーが無いときだけ書く (SET NX)。書いたら True。"""
        payload = json.dumps(value, default=str)
        try:
            written = await self.redis.set(
                cache_key(order_id), payload, ex=ttl_seconds or self.ttl_seconds, nx=True
            )
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc
        return bool(written)

    async def refresh(self, order_id: str, ttl_seconds: int | None = None) -> None:
        try:
            await self.redis.expire(cache_key(order_id), ttl_seconds or self.ttl_seconds)
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as exc:
            raise CacheUnavailable(str(exc)) from exc
