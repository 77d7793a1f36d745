"""
Order Engine — 商品カタログ (Catalog)

商品の登録・参照・編集・削除。注文エンジンが外部から消費する面
（ID による参照と在庫調整）を最小限で実装する。在庫数はここでは
書き換えず、在庫台帳 (ledger) の操作だけで変化させる。
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .db import products
from .errors import PersistenceFailure, ProductNotFound
from .models import Product

logger = logging.getLogger(__name__)


def _to_product(row) -> Product:
    return Product(
        id=UUID(row.id),
        name=row.name,
        image=row.image,
        price=row.price,
        stock=row.stock,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class Catalog:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def create_product(
        self,
        name: str,
        price: Decimal,
        stock: int = 0,
        image: str | None = None,
    ) -> Product:
        now = datetime.now(timezone.utc)
        product = Product(id=uuid4(), name=name, image=image, price=price, stock=stock, created_at=now)
        try:
            async with self.session_factory() as session:
                await session.execute(
                    insert(products).values(
                        id=str(product.id),
                        name=product.name,
                        image=product.image,
                        price=product.price,
                        stock=product.stock,
                        created_at=now,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Product creation failed: {e}") from e

        logger.info("Product %s created: %s", product.id, product.name)
        return product

    async def get_product(self, product_id: UUID) -> Product:
        try:
            async with self.session_factory() as session:
                row = (
                    await session.execute(select(products).where(products.c.id == str(product_id)))
                ).fetchone()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Product lookup failed: {e}") from e
        if row is None:
            raise ProductNotFound(product_id)
        return _to_product(row)

    async def list_products(self) -> list[Product]:
        try:
            async with self.session_factory() as session:
                rows = (
                    await session.execute(select(products).order_by(products.c.created_at.desc()))
                ).fetchall()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Product listing failed: {e}") from e
        return [_to_product(row) for row in rows]

    async def update_product(
        self,
        product_id: UUID,
        name: str | None = None,
        image: str | None = None,
        price: Decimal | None = None,
    ) -> Product:
        """名前・画像・価格の編集。価格変更は既存注文の明細価格に影響しない。"""
        changes = {
            key: value
            for key, value in (("name", name), ("image", image), ("price", price))
            if value is not None
        }
        if changes:
            try:
                async with self.session_factory() as session:
                    result = await session.execute(
                        update(products)
                        .where(products.c.id == str(product_id))
                        .values(**changes, updated_at=datetime.now(timezone.utc))
                        .returning(products.c.id)
                    )
                    if result.scalar_one_or_none() is None:
                        raise ProductNotFound(product_id)
                    await session.commit()
            except SQLAlchemyError as e:
                raise PersistenceFailure(f"Product update failed: {e}") from e
            logger.info("Product %s updated: %s", product_id, sorted(changes))
        return await self.get_product(product_id)

    async def delete_product(self, product_id: UUID) -> None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(products).where(products.c.id == str(product_id)).returning(products.c.id)
                )
                if result.scalar_one_or_none() is None:
                    raise ProductNotFound(product_id)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Product deletion failed: {e}") from e
        logger.info("Product %s deleted", product_id)
