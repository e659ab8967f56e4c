"""
Order Pipeline — 設定

環境変数から一度だけ読み込み、各コンポーネントに明示的に渡す。
グローバルな接続ハンドルは持たない（生成は main / worker の責務）。
"""

import os
from collections.abc import Mapping
from decimal import Decimal

from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str
    redis_url: str = "redis://localhost:6379"
    stream_key: str = "orders_stream"

    tax_rate: Decimal = Decimal("0.18")
    cache_ttl_seconds: int = 3600

    # ── コンシューマ ─────────────────────────────
    read_block_ms: int = 5000
    read_batch_size: int | None = None
    start_position: str = "$"
    max_consecutive_errors: int = 5
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 30000

    # ── スーパーバイザ ───────────────────────────
    restart_cooldown_seconds: float = 5.0
    max_restarts: int | None = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """環境変数から設定を組み立てる。DATABASE_URL は必須。"""
        env = os.environ if environ is None else environ
        fields = {
            "database_url": env["DATABASE_URL"],
            "redis_url": env.get("REDIS_URL"),
            "stream_key": env.get("ORDERS_STREAM"),
            "tax_rate": env.get("TAX_RATE"),
            "cache_ttl_seconds": env.get("CACHE_TTL_SECONDS"),
            "read_block_ms": env.get("READ_BLOCK_MS"),
            "read_batch_size": env.get("READ_BATCH_SIZE"),
            "start_position": env.get("STREAM_START_ID"),
            "max_consecutive_errors": env.get("MAX_CONSECUTIVE_ERRORS"),
            "backoff_base_ms": env.get("BACKOFF_BASE_MS"),
            "backoff_max_ms": env.get("BACKOFF_MAX_MS"),
            "restart_cooldown_seconds": env.get("RESTART_COOLDOWN_SECONDS"),
            "max_restarts": env.get("MAX_RESTARTS"),
            "log_level": env.get("LOG_LEVEL"),
        }
        # 未設定のものはデフォルト値に任せる
        return cls(**{k: v for k, v in fields.items() if v not in (None, "")})
