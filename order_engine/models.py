"""
Order Engine — ドメインモデル

商品・注文・注文明細と、注文ステータスの状態遷移表を定義する。

状態遷移:
    PENDING → PAID     (入金確認。明示的なステータス更新)
    PAID    → SHIPPED  (配送担当者の割り当てに連動して自動遷移)
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset(),
}

# 配送担当者を割り当てると PAID の注文は「発送済み」になる
DISPATCH_ON_ASSIGNMENT: tuple[OrderStatus, OrderStatus] = (
    OrderStatus.PAID,
    OrderStatus.SHIPPED,
)

# INTEGER カラムに収まる上限（数量・在庫調整量）
MAX_QUANTITY = 2**31 - 1


class Product(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    image: str | None = None
    price: Decimal = Field(ge=0)
    stock: int = Field(ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class OrderLineItem(BaseModel):
    """注文明細: 価格と商品名は注文時点のスナップショット"""

    model_config = ConfigDict(from_attributes=True)

    product_id: UUID
    product_name: str
    quantity: int = Field(gt=0, le=MAX_QUANTITY)
    unit_price: Decimal = Field(ge=0)

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class OrderDraft(BaseModel):
    """永続化前の注文（id と注文日時は Order Store が採番する）"""

    order_code: str
    customer_name: str
    customer_email: str
    items: list[OrderLineItem]
    total: Decimal
    status: OrderStatus = OrderStatus.PENDING


class Order(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_code: str
    customer_name: str
    customer_email: str
    ordered_at: datetime
    items: list[OrderLineItem]
    total: Decimal
    status: OrderStatus
    assigned_to: str | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Reservation:
    """在庫引き当て 1 件（解放時の補償に使う）"""

    product_id: UUID
    quantity: int
    remaining: int


# ── Request Models ───────────────────────────────


class LineItemRequest(BaseModel):
    product_id: UUID
    quantity: int = Field(gt=0, le=MAX_QUANTITY)


class PlaceOrderRequest(BaseModel):
    order_code: str | None = None
    customer_name: str = Field(min_length=1)
    customer_email: str = Field(min_length=1)
    items: list[LineItemRequest] = Field(min_length=1)
    paid: bool = False


class StatusRequest(BaseModel):
    status: OrderStatus


class AssignRequest(BaseModel):
    assigned_to: str | None = None


class CreateProductRequest(BaseModel):
    name: str = Field(min_length=1)
    image: str | None = None
    price: Decimal = Field(ge=0)
    stock: int = Field(default=0, ge=0, le=MAX_QUANTITY)


class UpdateProductRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    image: str | None = None
    price: Decimal | None = Field(default=None, ge=0)


class AdjustStockRequest(BaseModel):
    delta: int = Field(ge=-MAX_QUANTITY, le=MAX_QUANTITY)
