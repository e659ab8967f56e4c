"""
Order Pipeline — Redis Streams キュー

Pub/Sub と違い、Streams はエントリを永続的に保持するので
コンシューマが落ちていた間のイベントも失われない。

各ワーカーはコンシューマグループを使わず、独立したリーダーとして
自分の最終読み出し位置から XREAD する。同じエントリが複数の
ワーカーに届くことがある（at-least-once）が、DB の upsert で吸収する。
"""

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import QueueUnavailable

logger = logging.getLogger(__name__)

# 空のストリームの「先頭より前」の位置
STREAM_ORIGIN = "0-0"


class OrderStream:
    def __init__(self, redis: aioredis.Redis, stream_key: str = "orders_stream") -> None:
        self.redis = redis
        self.stream_key = stream_key

    async def append(self, fields: dict[str, str]) -> str:
        """エントリを追記し、Redis が採番したエントリ ID を返す。"""
        try:
            return await self.redis.xadd(self.stream_key, fields)
        except RedisError as exc:
            raise QueueUnavailable() from exc

    async def read_blocking(
        self,
        after: str,
        timeout_ms: int,
        count: int | None = None,
    ) -> list[tuple[str, dict[str, str]]]:
        """
        after より後ろのエントリを最大 timeout_ms だけ待って読む。
        タイムアウトした場合は空リストを返す。
        """
        try:
            response = await self.redis.xread(
                {self.stream_key: after}, count=count, block=timeout_ms
            )
        except RedisError as exc:
            raise QueueUnavailable("Failed to read from stream") from exc

        entries: list[tuple[str, dict[str, str]]] = []
        for _stream, messages in response or []:
            entries.extend((entry_id, dict(fields)) for entry_id, fields in messages)
        return entries

    async def latest_id(self) -> str:
        """最新エントリの ID。ストリームが空なら 0-0。"""
        try:
            newest = await self.redis.xrevrange(self.stream_key, count=1)
        except RedisError as exc:
            raise QueueUnavailable("Failed to read from stream") from exc
        if not newest:
            return STREAM_ORIGIN
        return newest[0][0]
