"""
Order Pipeline — イベント / レコード定義

OrderSubmitted: ストリームに追記される不変のイベント。
    ストリームのフィールドはすべて文字列なので、金額は10進表記で書き、
    読み出し時にパースし直す。
OrderRecord: DB 上の正のレコード。キャッシュにも同じ形で載せる。
"""

import re
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

from pydantic import BaseModel, ConfigDict

from .errors import MalformedEvent

ORDER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,100}$")
MAX_AMOUNT = Decimal("999999.9999")
FOUR_PLACES = Decimal("0.0001")


def quantize(value: Decimal) -> Decimal:
    """小数点以下4桁に丸める（四捨五入）。"""
    return value.quantize(FOUR_PLACES, rounding=ROUND_HALF_UP)


def parse_amount(raw) -> Decimal | None:
    """数値・文字列を Decimal に変換する。有限の数でなければ None。"""
    if isinstance(raw, bool) or raw is None:
        return None
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite():
        return None
    return value


class OrderStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OrderSubmitted(BaseModel):
    """注文が受け付けられた（ストリーム上のイベント）"""

    model_config = ConfigDict(frozen=True)

    order_id: str
    amount: Decimal
    submitted_at: datetime
    request_ip: str | None = None
    customer_id: str | None = None
    description: str | None = None

    def to_fields(self) -> dict[str, str]:
        """XADD 用のフラットな field-map。空の値は書かない。"""
        fields = {
            "order_id": self.order_id,
            "amount": str(self.amount),
            "created_at": self.submitted_at.isoformat(),
            "request_ip": self.request_ip,
            "customer_id": self.customer_id,
            "description": self.description,
        }
        return {k: v for k, v in fields.items() if v}

    @classmethod
    def from_fields(cls, fields: dict[str, str]) -> "OrderSubmitted":
        order_id = fields.get("order_id")
        raw_amount = fields.get("amount")
        if not order_id or not raw_amount:
            raise MalformedEvent(f"missing order_id or amount: {fields!r}")
        if not ORDER_ID_PATTERN.match(order_id):
            raise MalformedEvent(f"invalid order_id: {order_id[:120]!r}")

        # 受付時と同じ範囲。範囲外は DB の NUMERIC(12,4) に入らない
        amount = parse_amount(raw_amount)
        if amount is None or amount <= 0 or amount > MAX_AMOUNT or quantize(amount) <= 0:
            raise MalformedEvent(f"invalid amount for order {order_id}: {raw_amount!r}")

        try:
            submitted_at = datetime.fromisoformat(fields["created_at"])
        except (KeyError, ValueError):
            submitted_at = datetime.now(timezone.utc)

        return cls(
            order_id=order_id,
            amount=quantize(amount),
            submitted_at=submitted_at,
            request_ip=fields.get("request_ip"),
            customer_id=fields.get("customer_id"),
            description=fields.get("description"),
        )


class OrderRecord(BaseModel):
    """処理済みの注文（DB の orders 行、およびキャッシュのスナップショット）"""

    order_id: str
    amount: Decimal
    tax: Decimal
    total: Decimal
    status: OrderStatus
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None
    customer_id: str | None = None
    description: str | None = None


# ── 重複抑止マーカー ─────────────────────────────


def pending_marker(event: OrderSubmitted) -> dict:
    """
    処理前のキャッシュエントリ。

    受付直後〜コンシューマが処理するまでの間に同じ order_id が
    再送されたとき、重複として拒否するために使う。
    読み取り側ではキャッシュミスとして扱う。
    """
    return {
        "order_id": event.order_id,
        "amount": str(event.amount),
        "status": OrderStatus.PROCESSING.value,
        "created_at": event.submitted_at.isoformat(),
        "pending": True,
    }


def is_pending(snapshot: dict) -> bool:
    return bool(snapshot.get("pending"))
