"""
Order Engine — エラー分類 (Error Taxonomy)

呼び出し側には「どの商品/注文で、なぜ失敗したか」を必ず返す。
HTTP 層はクラスごとにステータスコードへ変換する。
"""

from uuid import UUID


class OrderEngineError(Exception):
    """エンジンが送出する全エラーの基底クラス"""

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "detail": str(self)}


class ValidationError(OrderEngineError):
    """入力不正・合計金額の不一致（変更前に拒否される）"""


class NotFound(OrderEngineError):
    pass


class ProductNotFound(NotFound):
    def __init__(self, product_id: UUID) -> None:
        super().__init__(f"Product not found: {product_id}")
        self.product_id = product_id

    def to_dict(self) -> dict:
        return {**super().to_dict(), "product_id": str(self.product_id)}


class OrderNotFound(NotFound):
    def __init__(self, order_id: UUID) -> None:
        super().__init__(f"Order not found: {order_id}")
        self.order_id = order_id

    def to_dict(self) -> dict:
        return {**super().to_dict(), "order_id": str(self.order_id)}


class PlacementError(OrderEngineError):
    """注文確定に失敗した（どの商品で、なぜ）"""

    def __init__(self, product_id: UUID, reason: str) -> None:
        super().__init__(f"{reason}: {product_id}")
        self.product_id = product_id
        self.reason = reason

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "product_id": str(self.product_id),
            "reason": self.reason,
        }


class InsufficientStock(PlacementError):
    """在庫不足: 不足数 (shortfall) を保持する"""

    def __init__(self, product_id: UUID, requested: int, available: int) -> None:
        super().__init__(product_id, "Insufficient stock")
        self.requested = requested
        self.available = available
        self.shortfall = requested - available
        self.args = (
            f"Insufficient stock for {product_id}: "
            f"requested={requested}, available={available}",
        )

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "requested": self.requested,
            "available": self.available,
            "shortfall": self.shortfall,
        }


class InvalidTransition(OrderEngineError):
    """状態遷移表にない遷移を要求された"""

    def __init__(self, order_id: UUID, current: str, target: str) -> None:
        super().__init__(f"Cannot move order {order_id} from {current} to {target}")
        self.order_id = order_id
        self.current = current
        self.target = target

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "order_id": str(self.order_id),
            "current": self.current,
            "target": self.target,
        }


class PersistenceFailure(OrderEngineError):
    """ストアが利用できない（引き当て済み在庫は解放後に送出される）"""


class CompensationFailure(PersistenceFailure):
    """補償トランザクション（在庫解放）の一部が適用できなかった"""

    def __init__(self, message: str, unreleased: list) -> None:
        super().__init__(message)
        self.unreleased = unreleased

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "unreleased": [
                {"product_id": str(r.product_id), "quantity": r.quantity}
                for r in self.unreleased
            ],
        }
