"""
Order Engine — 注文確定サービス (Placement Service)

外部の呼び出し側（HTTP 層など）が使う唯一の入口。

  ┌────────────────────────────────────────────────────────────┐
  │  1. 入力検証（明細なし・顧客情報なし → ValidationError）      │
  │  2. 商品スナップショット取得（名前・価格を注文時点で固定）     │
  │  3. Reservation Coordinator で全明細を一括引き当て            │
  │     └─ 失敗 → 在庫は元通り、注文も作られない                  │
  │  4. Order Store に注文を作成                                  │
  │     └─ 失敗 → 引き当て済み在庫をすべて解放してから送出        │
  └────────────────────────────────────────────────────────────┘

「在庫は減ったのに注文がない」「注文はあるのに在庫が減っていない」
状態は、確定処理の完了後には残らない。
"""

import asyncio
import logging
from collections.abc import Iterable
from uuid import UUID, uuid4

from .catalog import Catalog
from .errors import ValidationError
from .lifecycle import OrderLifecycle, initial_status
from .models import (
    MAX_QUANTITY,
    LineItemRequest,
    Order,
    OrderDraft,
    OrderLineItem,
    OrderStatus,
    Product,
)
from .order_store import OrderStore
from .reservation import ReservationCoordinator

logger = logging.getLogger(__name__)


def generate_order_code() -> str:
    return f"ORD-{uuid4().hex[:8].upper()}"


class PlacementService:
    def __init__(
        self,
        catalog: Catalog,
        coordinator: ReservationCoordinator,
        order_store: OrderStore,
        lifecycle: OrderLifecycle,
    ):
        self.catalog = catalog
        self.coordinator = coordinator
        self.order_store = order_store
        self.lifecycle = lifecycle

    async def place_order(
        self,
        customer_name: str,
        customer_email: str,
        items: Iterable[LineItemRequest],
        paid: bool = False,
        order_code: str | None = None,
    ) -> Order:
        customer_name = (customer_name or "").strip()
        customer_email = (customer_email or "").strip()
        items = list(items)
        if not items:
            raise ValidationError("No items provided")
        if not customer_name or not customer_email:
            raise ValidationError("Customer name and email are required")
        for item in items:
            if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
                raise ValidationError(f"Invalid quantity for {item.product_id}: {item.quantity!r}")
            if item.quantity > MAX_QUANTITY:
                raise ValidationError(
                    f"Quantity for {item.product_id} exceeds the maximum of {MAX_QUANTITY}"
                )

        # 価格は注文時点でコピーする（後の価格変更は過去の注文に影響しない）
        snapshots: dict[UUID, Product] = {}
        for item in items:
            if item.product_id not in snapshots:
                snapshots[item.product_id] = await self.catalog.get_product(item.product_id)

        line_items = [
            OrderLineItem(
                product_id=item.product_id,
                product_name=snapshots[item.product_id].name,
                quantity=item.quantity,
                unit_price=snapshots[item.product_id].price,
            )
            for item in items
        ]
        draft = OrderDraft(
            order_code=(order_code or "").strip() or generate_order_code(),
            customer_name=customer_name,
            customer_email=customer_email,
            items=line_items,
            total=sum((line.subtotal for line in line_items), start=0),
            status=initial_status(paid),
        )

        # 引き当て〜注文作成は呼び出し側がキャンセルしても最後まで走らせる
        return await asyncio.shield(self._reserve_and_create(draft))

    async def _reserve_and_create(self, draft: OrderDraft) -> Order:
        reservations = await self.coordinator.reserve_all(
            (line.product_id, line.quantity) for line in draft.items
        )
        try:
            order = await self.order_store.create(draft)
        except Exception as e:
            logger.warning(
                "Order %s could not be created (%s); releasing %d reservation(s)",
                draft.order_code,
                e,
                len(reservations),
            )
            await self.coordinator.release_all(reservations)
            raise

        logger.info(
            "Order %s placed for %s: %d item(s), total %s",
            order.order_code,
            order.customer_email,
            len(order.items),
            order.total,
        )
        return order

    # ── 呼び出し側向け API ───────────────────────

    async def list_orders(self) -> list[Order]:
        return await self.order_store.list_orders(newest_first=True)

    async def get_order(self, order_id: UUID) -> Order:
        return await self.order_store.get(order_id)

    async def update_order_status(self, order_id: UUID, status: OrderStatus) -> Order:
        """検証付きのステータス更新（例: 入金確認で PENDING → PAID）"""
        return await self.lifecycle.transition(order_id, status)

    async def override_order_status(self, order_id: UUID, status: OrderStatus) -> Order:
        """管理者用の上書き。状態遷移表の検証を行わない。"""
        return await self.lifecycle.override_status(order_id, status)

    async def assign_order(self, order_id: UUID, agent: str | None) -> Order:
        return await self.lifecycle.assign(order_id, agent)
