"""
Order Pipeline — エラー分類

- 受付拒否 (AdmissionRejected): 呼び出し元に構造化して返す。スタックは含めない。
- インフラ障害 (*Unavailable): 元の例外を __cause__ に保持する。
  Cache の障害は常にローカルで吸収され、呼び出し元には出ない。
- コンシューマ内部 (MalformedEvent, ConsumerAborted)
"""


class OrderPipelineError(Exception):
    """このパッケージが送出する例外の基底クラス"""


class AdmissionRejected(OrderPipelineError):
    reason = "rejected"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def detail(self) -> dict:
        return {"error": self.message, "reason": self.reason}


class ValidationError(AdmissionRejected):
    """入力が不正。リトライしても成功しない。"""

    reason = "invalid_request"


class DuplicateError(AdmissionRejected):
    """同じ order_id が既に受け付け済み（業務上の競合で、障害ではない）"""

    reason = "duplicate_order"

    def __init__(
        self,
        order_id: str,
        existing: dict | None = None,
        status: str | None = None,
    ) -> None:
        super().__init__("Order already exists")
        self.order_id = order_id
        self.existing = existing
        self.status = status

    def detail(self) -> dict:
        body = super().detail()
        body["order_id"] = self.order_id
        if self.existing is not None:
            body["existing_order"] = self.existing
        if self.status is not None:
            body["status"] = self.status
        return body


class QueueUnavailable(AdmissionRejected):
    """ストリームへの追記・読み出しに失敗した。サーバ側ではリトライしない。"""

    reason = "queue_unavailable"

    def __init__(self, message: str = "Failed to queue order") -> None:
        super().__init__(message)


class CacheUnavailable(OrderPipelineError):
    pass


class StoreUnavailable(OrderPipelineError):
    pass


class MalformedEvent(OrderPipelineError):
    """ポイズンメッセージ。リトライせずに破棄する。"""


class ConsumerAborted(OrderPipelineError):
    """連続エラーが上限に達した。スーパーバイザが再起動する。"""

    def __init__(self, consecutive_errors: int) -> None:
        super().__init__(f"Too many consecutive errors ({consecutive_errors})")
        self.consecutive_errors = consecutive_errors
