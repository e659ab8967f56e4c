"""
Order Pipeline — コンシューマのスーパーバイザ

ConsumerAborted（連続エラー上限）を受けたら、クールダウン後に
同じ OrderProcessor を再起動する。読み出し位置は引き継がれる。

max_restarts が None の場合は無制限に再起動する。
"""

import asyncio
import logging

from .errors import ConsumerAborted
from .processor import OrderProcessor, wait_for_shutdown

logger = logging.getLogger(__name__)


class ConsumerSupervisor:
    def __init__(
        self,
        processor: OrderProcessor,
        cooldown_seconds: float = 5.0,
        max_restarts: int | None = None,
    ) -> None:
        self.processor = processor
        self.cooldown_seconds = cooldown_seconds
        self.max_restarts = max_restarts
        self.restarts = 0

    async def run(self, shutdown: asyncio.Event) -> None:
        while not shutdown.is_set():
            try:
                await self.processor.run(shutdown)
            except ConsumerAborted as exc:
                if shutdown.is_set():
                    break
                if self.max_restarts is not None and self.restarts >= self.max_restarts:
                    logger.error("Consumer aborted %d times, giving up", self.restarts + 1)
                    raise
                self.restarts += 1
                logger.error(
                    "%s, restarting consumer in %.1fs (restart #%d)",
                    exc, self.cooldown_seconds, self.restarts,
                )
                await wait_for_shutdown(shutdown, self.cooldown_seconds)
        logger.info("Supervisor stopped")
