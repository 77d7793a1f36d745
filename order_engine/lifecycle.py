"""
Order Engine — 注文ライフサイクル (Order Lifecycle Manager)

注文ステータスの状態機械と、配送担当者の割り当てに連動する遷移を管理する。

    PENDING ──(入金確認)──▶ PAID ──(担当者割り当て)──▶ SHIPPED

- transition:      状態遷移表に沿った遷移のみ許可（検証あり）
- override_status: 管理者用の上書き（検証なしのエスケープハッチ）
- assign:          担当者の割り当て / 解除。PAID の注文は自動で SHIPPED になる
"""

import logging
from uuid import UUID

from .errors import InvalidTransition
from .models import TRANSITIONS, Order, OrderStatus
from .order_store import OrderStore

logger = logging.getLogger(__name__)


def initial_status(paid: bool) -> OrderStatus:
    return OrderStatus.PAID if paid else OrderStatus.PENDING


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[current]


class OrderLifecycle:
    def __init__(self, order_store: OrderStore):
        self.order_store = order_store

    async def transition(self, order_id: UUID, target: OrderStatus) -> Order:
        """
        検証付きのステータス遷移

        現在のステータスを読んで遷移可否を判定し、compare-and-set で書き込む。
        読んでから書くまでに他の更新が割り込んだ場合は最新の状態で
        InvalidTransition を送出する（自動リトライはしない）。
        """
        order = await self.order_store.get(order_id)
        if not can_transition(order.status, target):
            raise InvalidTransition(order_id, order.status.value, target.value)

        updated = await self.order_store.compare_and_set_status(order_id, order.status, target)
        if updated is None:
            latest = await self.order_store.get(order_id)
            raise InvalidTransition(order_id, latest.status.value, target.value)

        logger.info("Order %s: %s -> %s", order_id, order.status.value, target.value)
        return updated

    async def override_status(self, order_id: UUID, status: OrderStatus) -> Order:
        """管理者用: 状態遷移表を無視してステータスを上書きする。"""
        order = await self.order_store.set_status(order_id, status, reason="override")
        logger.warning("Order %s status overridden to %s", order_id, status.value)
        return order

    async def assign(self, order_id: UUID, agent: str | None) -> Order:
        """
        配送担当者の割り当て

        空文字は解除 (None) として扱う。PAID の注文に担当者を割り当てると
        「発送済み」とみなして SHIPPED に遷移する。
        """
        if agent is not None and not agent.strip():
            agent = None

        order = await self.order_store.set_assignment(order_id, agent)
        if agent is None:
            logger.info("Order %s unassigned", order_id)
        else:
            logger.info("Order %s assigned to %s (status %s)", order_id, agent, order.status.value)
        return order
