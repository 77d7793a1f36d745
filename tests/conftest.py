import asyncio
import json
from decimal import Decimal

import pytest

from order_engine.db import create_engine, create_session_factory, init_schema
from order_engine.engine import build_order_engine


class RecordingRedis:
    """Redis の publish だけを記録するテスト用の代役"""

    def __init__(self):
        self.messages: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: str) -> int:
        self.messages.append((channel, json.loads(message)))
        return 0

    def event_types(self, channel: str) -> list[str]:
        return [m["event_type"] for c, m in self.messages if c == channel]


class BrokenRedis:
    """publish が常に Redis 以外の例外を送出する"""

    async def publish(self, channel: str, message: str) -> int:
        raise RuntimeError("connection pool corrupted")


class GatedRedis(RecordingRedis):
    """指定チャンネルへの最初の publish を gate が開くまで止める"""

    def __init__(self, channel: str):
        super().__init__()
        self.channel = channel
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()
        self.order_published = asyncio.Event()

    async def publish(self, channel: str, message: str) -> int:
        if channel == self.channel and not self.entered.is_set():
            self.entered.set()
            await self.gate.wait()
        result = await super().publish(channel, message)
        if channel == "order_events":
            self.order_published.set()
        return result


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def redis():
    return RecordingRedis()


@pytest.fixture
def broken_redis():
    return BrokenRedis()


@pytest.fixture
def gated_redis():
    """在庫イベントの最初の publish で止まる Redis"""
    return GatedRedis("inventory_events")


@pytest.fixture
async def order_engine(tmp_path, redis):
    db_engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_schema(db_engine)
    yield build_order_engine(create_session_factory(db_engine), redis)
    await db_engine.dispose()


@pytest.fixture
def make_product(order_engine):
    async def _make(name="Widget", price="100", stock=10, image=None):
        return await order_engine.catalog.create_product(
            name=name, price=Decimal(price), stock=stock, image=image
        )

    return _make


@pytest.fixture
def stock_of(order_engine):
    async def _stock(product) -> int:
        return (await order_engine.catalog.get_product(product.id)).stock

    return _stock
