"""
Request Service — ドメイン例外

ビジネスルールによる失敗（在庫不足など）は型付き例外として呼び出し元へ伝播する。
ログに出して握りつぶさない。各例外は API レスポンス用の code を持つ。

    RequestServiceError
    ├─ RequestNotFound
    ├─ ProductNotFound
    ├─ InsufficientStock
    ├─ RequestNotPending
    │   └─ NotCancelable
    └─ TransactionFailed

TransactionConflict はストア内部のシグナルで、run_transaction がリトライに使う。
"""


class RequestServiceError(Exception):
    code = "REQUEST_SERVICE_ERROR"


class RequestNotFound(RequestServiceError):
    code = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"Request not found: {request_id}")


class ProductNotFound(RequestServiceError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class InsufficientStock(RequestServiceError):
    """承認しようとした数量が現在の在庫を上回っている"""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, available: int, requested: int) -> None:
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient stock: {available} available, {requested} requested"
        )


class RequestNotPending(RequestServiceError):
    """既に承認・却下されたリクエスト（終端状態は変更できない）"""

    code = "REQUEST_NOT_PENDING"

    def __init__(self, request_id: str, state: str) -> None:
        self.request_id = request_id
        self.state = state
        super().__init__(f"Request {request_id} is no longer pending ({state})")


class NotCancelable(RequestNotPending):
    code = "NOT_CANCELABLE"


class TransactionFailed(RequestServiceError):
    """競合リトライを使い切った（ドメインエラーとは別扱い）"""

    code = "TRANSACTION_FAILED"

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Transaction failed after {attempts} attempts")


class TransactionConflict(Exception):
    """楽観的並行制御の競合 / シリアライズ失敗。リトライ対象。"""
