"""
Order Engine — イベント定義

状態変更はすべて過去形のイベントとしてイベントストアに記録し、
コミット後に Redis Pub/Sub で他サービスへ通知する。
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel


class DomainEvent(BaseModel):
    timestamp: datetime

    @property
    def event_type(self) -> str:
        return type(self).__name__


# ── 在庫 (Inventory) ─────────────────────────────


class InventoryReserved(DomainEvent):
    """在庫が引き当てられた（条件付きデクリメント成功）"""
    product_id: UUID
    quantity: int
    remaining: int


class InventoryReservationFailed(DomainEvent):
    """在庫引き当てが失敗した（在庫不足）"""
    product_id: UUID
    quantity_requested: int
    quantity_available: int


class InventoryReleased(DomainEvent):
    """引き当てが解放された（補償トランザクション）"""
    product_id: UUID
    quantity: int
    remaining: int


class StockAdjusted(DomainEvent):
    """管理者による在庫調整（0 で下限クリップ）"""
    product_id: UUID
    delta: int
    stock: int


# ── 注文 (Order) ─────────────────────────────────


class OrderCreated(DomainEvent):
    order_id: UUID
    order_code: str
    customer_name: str
    customer_email: str
    total: Decimal
    status: str
    items: list[dict]


class OrderStatusChanged(DomainEvent):
    order_id: UUID
    status: str
    reason: str


class OrderAssigned(DomainEvent):
    order_id: UUID
    assigned_to: str | None
    status: str
