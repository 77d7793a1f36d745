"""
Order Engine — 注文ストア (Order Store)

注文レコードとステータスを永続化する。書き込みは
注文行・明細行・イベントを 1 トランザクションでコミットし、
コミット後に order_events チャネルへ通知する。

注文は削除されない。変更はステータス更新と配送担当者の割り当てのみ。
"""

import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import case, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from . import event_store
from .db import order_items, orders
from .errors import OrderNotFound, PersistenceFailure, ValidationError
from .events import OrderAssigned, OrderCreated, OrderStatusChanged
from .models import DISPATCH_ON_ASSIGNMENT, Order, OrderDraft, OrderLineItem, OrderStatus
from .publisher import EventPublisher

logger = logging.getLogger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite はタイムゾーンを保持しないので UTC として扱う
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_order(row, items: list) -> Order:
    return Order(
        id=UUID(row.id),
        order_code=row.order_code,
        customer_name=row.customer_name,
        customer_email=row.customer_email,
        ordered_at=_aware(row.ordered_at),
        items=[
            OrderLineItem(
                product_id=UUID(item.product_id),
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in items
        ],
        total=row.total,
        status=OrderStatus(row.status),
        assigned_to=row.assigned_to,
        updated_at=_aware(row.updated_at),
    )


class OrderStore:
    def __init__(self, session_factory: sessionmaker, publisher: EventPublisher):
        self.session_factory = session_factory
        self.publisher = publisher

    @asynccontextmanager
    async def _session(self, action: str):
        try:
            async with self.session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"{action} failed: {e}") from e

    # ── Command (Write 側) ───────────────────────

    async def create(self, draft: OrderDraft) -> Order:
        """
        注文作成

        明細が空、または合計金額が明細小計の合計と一致しない場合は
        何も書き込まずに ValidationError。
        """
        if not draft.items:
            raise ValidationError("Order must contain at least one line item")
        expected = sum((item.subtotal for item in draft.items), start=0)
        if draft.total != expected:
            raise ValidationError(
                f"Order total {draft.total} does not match line items ({expected})"
            )

        order_id = uuid4()
        now = datetime.now(timezone.utc)
        order = Order(id=order_id, ordered_at=now, updated_at=now, **draft.model_dump())

        async with self._session("Order creation") as session:
            await session.execute(
                insert(orders).values(
                    id=str(order_id),
                    order_code=order.order_code,
                    customer_name=order.customer_name,
                    customer_email=order.customer_email,
                    ordered_at=now,
                    total=order.total,
                    status=order.status.value,
                    assigned_to=None,
                    updated_at=now,
                )
            )
            await session.execute(
                insert(order_items),
                [
                    {
                        "order_id": str(order_id),
                        "position": position,
                        "product_id": str(item.product_id),
                        "product_name": item.product_name,
                        "quantity": item.quantity,
                        "unit_price": item.unit_price,
                    }
                    for position, item in enumerate(order.items)
                ],
            )
            event = OrderCreated(
                order_id=order_id,
                order_code=order.order_code,
                customer_name=order.customer_name,
                customer_email=order.customer_email,
                total=order.total,
                status=order.status.value,
                items=[item.model_dump(mode="json") for item in order.items],
                timestamp=now,
            )
            await event_store.append_event(session, order_id, "Order", event)
            await session.commit()

        logger.info("Order %s (%s) created with status %s", order_id, order.order_code, order.status.value)
        await self.publisher.publish_order(event)
        return order

    async def set_status(self, order_id: UUID, status: OrderStatus, reason: str = "override") -> Order:
        """ステータスの無条件上書き（管理者用）"""
        now = datetime.now(timezone.utc)
        async with self._session("Status update") as session:
            result = await session.execute(
                update(orders)
                .where(orders.c.id == str(order_id))
                .values(status=status.value, updated_at=now)
                .returning(orders.c.id)
            )
            if result.scalar_one_or_none() is None:
                await session.rollback()
                raise OrderNotFound(order_id)
            order, event = await self._record_status(session, order_id, status, reason, now)

        await self.publisher.publish_order(event)
        return order

    async def compare_and_set_status(
        self,
        order_id: UUID,
        expected: OrderStatus,
        status: OrderStatus,
        reason: str = "transition",
    ) -> Order | None:
        """現在のステータスが expected のときだけ更新する。競合負けなら None。"""
        now = datetime.now(timezone.utc)
        async with self._session("Status transition") as session:
            result = await session.execute(
                update(orders)
                .where(orders.c.id == str(order_id), orders.c.status == expected.value)
                .values(status=status.value, updated_at=now)
                .returning(orders.c.id)
            )
            if result.scalar_one_or_none() is None:
                await session.rollback()
                return None
            order, event = await self._record_status(session, order_id, status, reason, now)

        await self.publisher.publish_order(event)
        return order

    async def set_assignment(self, order_id: UUID, agent: str | None) -> Order:
        """
        配送担当者の割り当て / 解除

        PAID の注文に担当者（非 null）を割り当てると、同じ UPDATE 文の中で
        SHIPPED へ遷移する。解除 (None) ではステータスは変わらない。
        """
        dispatch_from, dispatch_to = DISPATCH_ON_ASSIGNMENT
        values = {"assigned_to": agent, "updated_at": datetime.now(timezone.utc)}
        if agent is not None:
            values["status"] = case(
                (orders.c.status == dispatch_from.value, dispatch_to.value),
                else_=orders.c.status,
            )

        async with self._session("Order assignment") as session:
            result = await session.execute(
                update(orders)
                .where(orders.c.id == str(order_id))
                .values(**values)
                .returning(orders.c.id)
            )
            if result.scalar_one_or_none() is None:
                await session.rollback()
                raise OrderNotFound(order_id)
            order = await self._load(session, order_id)
            event = OrderAssigned(
                order_id=order_id,
                assigned_to=agent,
                status=order.status.value,
                timestamp=values["updated_at"],
            )
            await event_store.append_event(session, order_id, "Order", event)
            await session.commit()

        await self.publisher.publish_order(event)
        return order

    async def _record_status(
        self,
        session: AsyncSession,
        order_id: UUID,
        status: OrderStatus,
        reason: str,
        now: datetime,
    ) -> tuple[Order, OrderStatusChanged]:
        order = await self._load(session, order_id)
        event = OrderStatusChanged(order_id=order_id, status=status.value, reason=reason, timestamp=now)
        await event_store.append_event(session, order_id, "Order", event)
        await session.commit()
        return order, event

    # ── Query (Read 側) ─────────────────────────

    async def get(self, order_id: UUID) -> Order:
        async with self._session("Order lookup") as session:
            order = await self._load(session, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    async def list_orders(self, newest_first: bool = True) -> list[Order]:
        """全注文一覧（既定は新しい順）"""
        ordering = orders.c.ordered_at.desc() if newest_first else orders.c.ordered_at.asc()
        async with self._session("Order listing") as session:
            rows = (await session.execute(select(orders).order_by(ordering))).fetchall()
            item_rows = (
                await session.execute(
                    select(order_items).order_by(order_items.c.order_id, order_items.c.position)
                )
            ).fetchall()

        items_by_order = defaultdict(list)
        for item in item_rows:
            items_by_order[item.order_id].append(item)
        return [_to_order(row, items_by_order[row.id]) for row in rows]

    async def _load(self, session: AsyncSession, order_id: UUID) -> Order | None:
        row = (
            await session.execute(select(orders).where(orders.c.id == str(order_id)))
        ).fetchone()
        if row is None:
            return None
        items = (
            await session.execute(
                select(order_items)
                .where(order_items.c.order_id == str(order_id))
                .order_by(order_items.c.position)
            )
        ).fetchall()
        return _to_order(row, items)
