"""
Order Pipeline — ワーカープロセスのエントリーポイント

    python -m app.worker

起動時に Redis と DB への接続を確認し、SIGTERM / SIGINT で
shutdown_event をセットする。処理中のエントリを終えてから
接続を閉じて終了する。

スケールアウトはこのプロセスを複数起動するだけでよい。
各ワーカーは独立したリーダーとしてストリーム全体を読む。
"""

import asyncio
import logging
import signal
import sys

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .cache import OrderCache
from .errors import CacheUnavailable, StoreUnavailable
from .processor import OrderProcessor
from .settings import Settings
from .store import OrderStore
from .stream import OrderStream
from .supervisor import ConsumerSupervisor

logger = logging.getLogger(__name__)


def install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(signame: str) -> None:
        if shutdown_event.is_set():
            return
        logger.info("Received %s, starting graceful shutdown...", signame)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _request_shutdown, sig.name)


async def validate_connections(cache: OrderCache, store: OrderStore) -> None:
    logger.info("Validating service connections...")
    await cache.ping()
    logger.info("Worker connected to Redis")
    await store.ping()
    logger.info("Worker connected to database")


async def run_worker(settings: Settings, shutdown_event: asyncio.Event | None = None) -> None:
    shutdown_event = shutdown_event or asyncio.Event()

    redis_conn = aioredis.from_url(settings.redis_url, decode_responses=True)
    engine = create_async_engine(settings.database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    stream = OrderStream(redis_conn, settings.stream_key)
    cache = OrderCache(redis_conn, settings.cache_ttl_seconds)
    store = OrderStore(async_session)
    processor = OrderProcessor.from_settings(settings, stream, cache, store)
    supervisor = ConsumerSupervisor(
        processor,
        cooldown_seconds=settings.restart_cooldown_seconds,
        max_restarts=settings.max_restarts,
    )

    try:
        await validate_connections(cache, store)
        install_signal_handlers(shutdown_event)
        logger.info("Starting order processing on %s", settings.stream_key)
        await supervisor.run(shutdown_event)
    finally:
        await redis_conn.aclose()
        logger.info("Redis connection closed")
        await engine.dispose()
        logger.info("Database connection closed")


def main() -> int:
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(run_worker(settings))
    except (CacheUnavailable, StoreUnavailable):
        logger.exception("Failed to initialize worker")
        return 1
    logger.info("Graceful shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
