"""
Order Engine — 在庫台帳 (Product Ledger)

商品ごとの在庫数を保持し、以下の操作を提供する:

- try_reserve: 在庫 >= 数量 のときだけ減算する（条件付きデクリメント）
- release:     引き当ての取り消し（補償トランザクション）
- adjust:      管理者による在庫調整（0 で下限クリップ、注文経路では使わない）

「在庫を読む → 判定する → 減算する」を別々に行うと、最後の 1 個を
2 つの注文が同時に確保できてしまう。ここでは判定と減算を 1 本の
UPDATE 文にまとめ、行ロックで同一商品への引き当てを直列化する。
"""

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import event_store
from .db import products
from .errors import InsufficientStock, PersistenceFailure, ProductNotFound, ValidationError
from .events import InventoryReleased, InventoryReservationFailed, InventoryReserved, StockAdjusted
from .models import MAX_QUANTITY, Reservation
from .publisher import EventPublisher

logger = logging.getLogger(__name__)


def _check_quantity(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f"Quantity must be a positive integer, got {quantity!r}")
    if quantity > MAX_QUANTITY:
        raise ValidationError(f"Quantity {quantity} exceeds the maximum of {MAX_QUANTITY}")


class ProductLedger:
    def __init__(self, session_factory: sessionmaker, publisher: EventPublisher):
        self.session_factory = session_factory
        self.publisher = publisher

    async def try_reserve(self, product_id: UUID, quantity: int) -> Reservation:
        """
        在庫引き当て

        成功時は引き当て後の在庫数を持つ Reservation を返す。
        商品がなければ ProductNotFound、在庫不足なら InsufficientStock。
        """
        _check_quantity(quantity)
        now = datetime.now(timezone.utc)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(products)
                    .where(products.c.id == str(product_id), products.c.stock >= quantity)
                    .values(stock=products.c.stock - quantity, updated_at=now)
                    .returning(products.c.stock)
                )
                remaining = result.scalar_one_or_none()

                if remaining is None:
                    # 同じトランザクション内で失敗理由を確定させる
                    available = await session.scalar(
                        select(products.c.stock).where(products.c.id == str(product_id))
                    )
                    await session.rollback()
                else:
                    event = InventoryReserved(
                        product_id=product_id, quantity=quantity, remaining=remaining, timestamp=now
                    )
                    await event_store.append_event(session, product_id, "Inventory", event)
                    await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Stock reservation failed for {product_id}: {e}") from e

        if remaining is None:
            if available is None:
                raise ProductNotFound(product_id)
            await self.publisher.publish_inventory(
                InventoryReservationFailed(
                    product_id=product_id,
                    quantity_requested=quantity,
                    quantity_available=available,
                    timestamp=now,
                )
            )
            raise InsufficientStock(product_id, quantity, available)

        logger.debug("Reserved %d of %s (remaining=%d)", quantity, product_id, remaining)
        await self.publisher.publish_inventory(event)
        return Reservation(product_id=product_id, quantity=quantity, remaining=remaining)

    async def release(self, product_id: UUID, quantity: int) -> int:
        """
        在庫解放（補償トランザクション）

        成功した引き当て 1 件につき 1 回だけ呼ぶこと。解放後の在庫数を返す。
        """
        _check_quantity(quantity)
        now = datetime.now(timezone.utc)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(products)
                    .where(products.c.id == str(product_id))
                    .values(stock=products.c.stock + quantity, updated_at=now)
                    .returning(products.c.stock)
                )
                stock = result.scalar_one_or_none()
                if stock is None:
                    await session.rollback()
                    raise ProductNotFound(product_id)

                event = InventoryReleased(
                    product_id=product_id, quantity=quantity, remaining=stock, timestamp=now
                )
                await event_store.append_event(session, product_id, "Inventory", event)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Stock release failed for {product_id}: {e}") from e

        logger.info("Released %d of %s (stock=%d)", quantity, product_id, stock)
        await self.publisher.publish_inventory(event)
        return stock

    async def adjust(self, product_id: UUID, delta: int) -> int:
        """管理者による在庫調整。結果が負になる場合は 0 に丸める。"""
        if isinstance(delta, bool) or not isinstance(delta, int) or abs(delta) > MAX_QUANTITY:
            raise ValidationError(f"Invalid delta: {delta!r}")
        now = datetime.now(timezone.utc)
        adjusted = products.c.stock + delta

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(products)
                    .where(products.c.id == str(product_id))
                    .values(stock=case((adjusted < 0, 0), else_=adjusted), updated_at=now)
                    .returning(products.c.stock)
                )
                stock = result.scalar_one_or_none()
                if stock is None:
                    await session.rollback()
                    raise ProductNotFound(product_id)

                event = StockAdjusted(product_id=product_id, delta=delta, stock=stock, timestamp=now)
                await event_store.append_event(session, product_id, "Inventory", event)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Stock adjustment failed for {product_id}: {e}") from e

        logger.info("Adjusted stock of %s by %d (stock=%d)", product_id, delta, stock)
        await self.publisher.publish_inventory(event)
        return stock
