"""
Order Engine — データベース

商品 (products)・注文 (orders / order_items)・イベントストア (event_store) の
テーブル定義と、非同期エンジン / セッションファクトリの生成。

本番は PostgreSQL (asyncpg)、ローカル実行とテストは SQLite (aiosqlite)。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    event,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

metadata = MetaData()

MONEY = Numeric(12, 2)

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("image", String(1024)),
    Column("price", MONEY, nullable=False),
    Column("stock", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True)),
    # 在庫は決して負にならない（条件付き UPDATE の最後の砦）
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_code", String(64), nullable=False),
    Column("customer_name", String(255), nullable=False),
    Column("customer_email", String(255), nullable=False),
    Column("ordered_at", DateTime(timezone=True), nullable=False),
    Column("total", MONEY, nullable=False),
    Column("status", String(16), nullable=False),
    Column("assigned_to", String(255)),
    Column("updated_at", DateTime(timezone=True)),
    Index("ix_orders_ordered_at", "ordered_at"),
)

# product_id は参照のみ（商品が後で削除されても明細は残る）
order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(36), ForeignKey("orders.id"), nullable=False),
    Column("position", Integer, nullable=False),
    Column("product_id", String(36), nullable=False),
    Column("product_name", String(255), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", MONEY, nullable=False),
    Index("ix_order_items_order_id", "order_id"),
)

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", String(36), nullable=False),
    Column("aggregate_type", String(32), nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_event_store_aggregate_id", "aggregate_id"),
)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    engine = create_async_engine(database_url, echo=echo)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _configure_sqlite)
    return engine


def _configure_sqlite(dbapi_connection, _connection_record) -> None:
    # 並行する書き込みはロック待ちさせる（即 "database is locked" にしない）
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=10000")
    cursor.close()


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
