"""
Order Pipeline — 注文ストア (PostgreSQL)

orders テーブルが注文の唯一の正 (source of truth)。
order_id の UNIQUE 制約に対する INSERT ... ON CONFLICT DO UPDATE が
冪等性の境界になる: 同じイベントが何度届いても最終的な行は同じになる。

行単位の原子性は DB に任せ、アプリ側ではロックを取らない。
"""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    bindparam,
    func,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import sessionmaker

from .errors import StoreUnavailable
from .events import OrderRecord, OrderStatus

MONEY = Numeric(12, 4)
TIMESTAMP = DateTime(timezone=True)

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(100), nullable=False, unique=True),
    Column("amount", MONEY, nullable=False),
    Column("tax", MONEY, nullable=False),
    Column("total", MONEY, nullable=False),
    Column("status", String(20), nullable=False, server_default=OrderStatus.PROCESSING.value),
    Column("customer_id", Text, nullable=True),
    Column("description", Text, nullable=True),
    Column("created_at", TIMESTAMP, nullable=False, server_default=func.now()),
    Column("updated_at", TIMESTAMP, nullable=False, server_default=func.now()),
    Column("processed_at", TIMESTAMP, nullable=True),
    CheckConstraint(
        "status IN ('processing', 'completed', 'failed')", name="ck_orders_status"
    ),
    Index("idx_orders_status_created", "status", "created_at"),
    Index("idx_orders_updated_at", "updated_at"),
)

# created_at は初回 INSERT 時の値（イベントの受付時刻）を保持する
_UPSERT_ORDER = text("""
    INSERT INTO orders
        (order_id, amount, tax, total, status, customer_id, description,
         created_at, updated_at, processed_at)
    VALUES
        (:order_id, :amount, :tax, :total, 'completed', :customer_id, :description,
         :created_at, :now, :now)
    ON CONFLICT (order_id) DO UPDATE SET
        amount = excluded.amount,
        tax = excluded.tax,
        total = excluded.total,
        status = excluded.status,
        customer_id = excluded.customer_id,
        description = excluded.description,
        processed_at = excluded.processed_at,
        updated_at = excluded.updated_at
""").bindparams(
    bindparam("amount", type_=MONEY),
    bindparam("tax", type_=MONEY),
    bindparam("total", type_=MONEY),
    bindparam("created_at", type_=TIMESTAMP),
    bindparam("now", type_=TIMESTAMP),
)

_FIND_ORDER = text("""
    SELECT order_id, amount, tax, total, status, customer_id, description,
           created_at, updated_at, processed_at
    FROM orders
    WHERE order_id = :order_id
""").columns(
    amount=MONEY,
    tax=MONEY,
    total=MONEY,
    created_at=TIMESTAMP,
    updated_at=TIMESTAMP,
    processed_at=TIMESTAMP,
)


async def create_schema(engine: AsyncEngine) -> None:
    """orders テーブルを作成する（テスト・ローカル起動用）。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def _to_record(row) -> OrderRecord:
    return OrderRecord(
        order_id=row.order_id,
        amount=row.amount,
        tax=row.tax,
        total=row.total,
        status=row.status,
        customer_id=row.customer_id,
        description=row.description,
        created_at=row.created_at,
        updated_at=row.updated_at,
        processed_at=row.processed_at,
    )


class OrderStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def upsert_order(
        self,
        order_id: str,
        amount: Decimal,
        tax: Decimal,
        total: Decimal,
        now: datetime | None = None,
        created_at: datetime | None = None,
        customer_id: str | None = None,
        description: str | None = None,
    ) -> OrderRecord:
        """
        注文を completed として保存し、保存後の行を返す。

        無ければ INSERT、あれば amount / tax / total / status / 付随属性 /
        processed_at / updated_at を上書きする。created_at は保持。
        返す行は同じトランザクション内で読み直したもので、
        キャッシュにはこれをそのまま載せる。
        """
        now = now or datetime.now(timezone.utc)
        params = {
            "order_id": order_id,
            "amount": amount,
            "tax": tax,
            "total": total,
            "customer_id": customer_id,
            "description": description,
            "created_at": created_at or now,
            "now": now,
        }
        try:
            async with self.session_factory() as session:
                await session.execute(_UPSERT_ORDER, params)
                result = await session.execute(_FIND_ORDER, {"order_id": order_id})
                row = result.fetchone()
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"failed to persist order {order_id}") from exc
        return _to_record(row)

    async def find_order(self, order_id: str) -> OrderRecord | None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(_FIND_ORDER, {"order_id": order_id})
                row = result.fetchone()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"failed to look up order {order_id}") from exc

        if not row:
            return None
        return _to_record(row)

    async def ping(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise StoreUnavailable(str(exc)) from exc
        return True
