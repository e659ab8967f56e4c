"""
Order Pipeline — コンシューマ (処理ループ)

orders_stream を XREAD で読み、各エントリについて:
    1. フィールドを OrderSubmitted にデコード（不正なら破棄）
    2. 税額・合計を計算
    3. DB に upsert（冪等性の境界）
    4. キャッシュにライトスルー（失敗しても処理は成功扱い）

読み出し位置 (last_id) は DB への保存が成功したエントリまでしか進めない。
保存に失敗したエントリは次のイテレーションで同じ位置から読み直される。

ループ単位のエラー（XREAD の失敗、DB 障害など）は連続回数を数え、
指数バックオフで待つ。上限に達したら ConsumerAborted を送出し、
再起動はスーパーバイザに任せる。

シャットダウンは asyncio.Event で伝える。読み出し前・各エントリの前・
バックオフ中に確認し、処理中のエントリは最後まで終わらせる。
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal

from .cache import OrderCache
from .errors import CacheUnavailable, ConsumerAborted, MalformedEvent
from .events import OrderRecord, OrderSubmitted
from .pricing import DEFAULT_TAX_RATE, calculate_charges
from .settings import Settings
from .store import OrderStore
from .stream import OrderStream

logger = logging.getLogger(__name__)

LATEST = "$"


def backoff_delay(consecutive_errors: int, base_ms: int = 1000, max_ms: int = 30000) -> float:
    """min(base * 2^(n-1), max) ミリ秒を秒で返す。"""
    delay_ms = min(base_ms * 2 ** (consecutive_errors - 1), max_ms)
    return delay_ms / 1000


async def wait_for_shutdown(shutdown: asyncio.Event, seconds: float) -> bool:
    """最大 seconds 秒待つ。途中でシャットダウンされたら True。"""
    try:
        await asyncio.wait_for(shutdown.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


class OrderProcessor:
    def __init__(
        self,
        stream: OrderStream,
        cache: OrderCache,
        store: OrderStore,
        tax_rate: Decimal = DEFAULT_TAX_RATE,
        block_ms: int = 5000,
        batch_size: int | None = None,
        start_position: str = LATEST,
        max_consecutive_errors: int = 5,
        backoff_base_ms: int = 1000,
        backoff_max_ms: int = 30000,
    ) -> None:
        self.stream = stream
        self.cache = cache
        self.store = store
        self.tax_rate = tax_rate
        self.block_ms = block_ms
        self.batch_size = batch_size
        self.last_id = start_position
        self.max_consecutive_errors = max_consecutive_errors
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms

        self.processed = 0
        self.dropped = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        stream: OrderStream,
        cache: OrderCache,
        store: OrderStore,
    ) -> "OrderProcessor":
        return cls(
            stream,
            cache,
            store,
            tax_rate=settings.tax_rate,
            block_ms=settings.read_block_ms,
            batch_size=settings.read_batch_size,
            start_position=settings.start_position,
            max_consecutive_errors=settings.max_consecutive_errors,
            backoff_base_ms=settings.backoff_base_ms,
            backoff_max_ms=settings.backoff_max_ms,
        )

    # ── 1エントリの処理 ──────────────────────────

    async def process_entry(self, entry_id: str, fields: dict[str, str]) -> OrderRecord | None:
        """
        エントリを処理して保存したレコードを返す。

        不正なエントリは破棄して None を返す（ポイズンメッセージ）。
        DB の障害は StoreUnavailable としてそのまま送出する。
        """
        try:
            event = OrderSubmitted.from_fields(fields)
        except MalformedEvent as exc:
            logger.error("Dropping malformed entry %s: %s", entry_id, exc)
            self.dropped += 1
            return None

        charges = calculate_charges(event.amount, self.tax_rate)
        logger.info(
            "Processing order %s: amount=%s, tax=%s, total=%s",
            event.order_id, charges.amount, charges.tax, charges.total,
        )

        # キャッシュには DB に保存された行をそのまま載せる
        record = await self.store.upsert_order(
            event.order_id,
            charges.amount,
            charges.tax,
            charges.total,
            now=datetime.now(timezone.utc),
            created_at=event.submitted_at,
            customer_id=event.customer_id,
            description=event.description,
        )
        try:
            await self.cache.set(event.order_id, record.model_dump(mode="json"))
        except CacheUnavailable as exc:
            logger.warning("Failed to cache order %s after processing: %s", event.order_id, exc)

        self.processed += 1
        logger.info("Order %s processed successfully (entry %s)", event.order_id, entry_id)
        return record

    # ── ループ ─────────────────────────────────

    async def poll_once(self, shutdown: asyncio.Event) -> int:
        """1回読み出して処理する。処理（破棄含む）したエントリ数を返す。"""
        if self.last_id == LATEST:
            self.last_id = await self.stream.latest_id()
            logger.info("Reading %s from position %s", self.stream.stream_key, self.last_id)

        entries = await self.stream.read_blocking(self.last_id, self.block_ms, self.batch_size)
        handled = 0
        for entry_id, fields in entries:
            if shutdown.is_set():
                logger.info("Shutdown requested, stopping message processing")
                break
            await self.process_entry(entry_id, fields)
            self.last_id = entry_id
            handled += 1
        return handled

    async def run(self, shutdown: asyncio.Event) -> None:
        """shutdown がセットされるまで処理を続ける。"""
        consecutive_errors = 0
        while not shutdown.is_set():
            try:
                await self.poll_once(shutdown)
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.exception(
                    "Error in message processing loop (%d/%d)",
                    consecutive_errors, self.max_consecutive_errors,
                )
                if consecutive_errors >= self.max_consecutive_errors:
                    raise ConsumerAborted(consecutive_errors) from exc

                delay = backoff_delay(consecutive_errors, self.backoff_base_ms, self.backoff_max_ms)
                logger.info("Waiting %.1fs before retry", delay)
                await wait_for_shutdown(shutdown, delay)

        logger.info("Consumer stopped at %s (processed=%d, dropped=%d)", self.last_id, self.processed, self.dropped)
