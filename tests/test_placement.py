"""Placement Service: end-to-end placement, snapshots and compensation."""
import asyncio
import re
from decimal import Decimal
from uuid import uuid4

import pytest

from order_engine.errors import InsufficientStock, PersistenceFailure, ProductNotFound, ValidationError
from order_engine.models import LineItemRequest, OrderStatus
from order_engine.engine import build_order_engine
from order_engine.order_store import OrderStore
from order_engine.placement import PlacementService
from order_engine.publisher import EventPublisher

pytestmark = pytest.mark.anyio


class FailingOrderStore(OrderStore):
    async def create(self, draft):
        raise PersistenceFailure("Order creation failed: store unavailable")


def line(product, quantity):
    return LineItemRequest(product_id=product.id, quantity=quantity)


async def test_place_order_round_trip(order_engine, make_product, stock_of):
    p1 = await make_product("Alpha", price="100", stock=5)
    p2 = await make_product("Beta", price="50", stock=3)

    order = await order_engine.placement.place_order(
        "Alice", "alice@example.com", [line(p1, 2), line(p2, 1)], paid=True, order_code="ORD-1001"
    )

    assert order.status == OrderStatus.PAID
    assert order.order_code == "ORD-1001"
    assert order.total == Decimal("250")
    assert order.total == sum(i.unit_price * i.quantity for i in order.items)

    loaded = await order_engine.placement.get_order(order.id)
    assert [(i.product_id, i.quantity, i.unit_price) for i in loaded.items] == [
        (p1.id, 2, Decimal("100")),
        (p2.id, 1, Decimal("50")),
    ]
    assert loaded.status == OrderStatus.PAID
    assert await stock_of(p1) == 3
    assert await stock_of(p2) == 2


async def test_unpaid_order_starts_pending(order_engine, make_product):
    product = await make_product(stock=5)
    order = await order_engine.placement.place_order("Bob", "bob@example.com", [line(product, 1)])
    assert order.status == OrderStatus.PENDING
    assert re.fullmatch(r"ORD-[0-9A-F]{8}", order.order_code)


async def test_price_is_snapshotted(order_engine, make_product):
    product = await make_product("Alpha", price="100", stock=5)
    order = await order_engine.placement.place_order("Alice", "a@example.com", [line(product, 2)])

    await order_engine.catalog.update_product(product.id, price=Decimal("175"))

    loaded = await order_engine.placement.get_order(order.id)
    assert loaded.items[0].unit_price == Decimal("100")
    assert loaded.total == Decimal("200")


async def test_order_survives_product_deletion(order_engine, make_product):
    product = await make_product("Alpha", stock=5)
    order = await order_engine.placement.place_order("Alice", "a@example.com", [line(product, 1)])
    await order_engine.catalog.delete_product(product.id)

    loaded = await order_engine.placement.get_order(order.id)
    assert loaded.items[0].product_name == "Alpha"


async def test_out_of_stock_item_rolls_back_whole_order(order_engine, make_product, stock_of):
    p1 = await make_product("P1", price="100", stock=5)
    p2 = await make_product("P2", price="50", stock=0)

    with pytest.raises(InsufficientStock) as exc_info:
        await order_engine.placement.place_order(
            "Alice", "a@example.com", [line(p1, 2), line(p2, 1)]
        )

    assert exc_info.value.product_id == p2.id
    assert await stock_of(p1) == 5
    assert await stock_of(p2) == 0
    assert await order_engine.placement.list_orders() == []


async def test_unknown_product_creates_nothing(order_engine, make_product, stock_of):
    product = await make_product(stock=5)
    missing = uuid4()

    with pytest.raises(ProductNotFound) as exc_info:
        await order_engine.placement.place_order(
            "Alice",
            "a@example.com",
            [line(product, 1), LineItemRequest(product_id=missing, quantity=1)],
        )

    assert exc_info.value.product_id == missing
    assert await stock_of(product) == 5
    assert await order_engine.placement.list_orders() == []


@pytest.mark.parametrize(
    "name,email",
    [("", "a@example.com"), ("Alice", "  ")],
)
async def test_missing_customer_details_rejected(order_engine, make_product, name, email):
    product = await make_product(stock=5)
    with pytest.raises(ValidationError):
        await order_engine.placement.place_order(name, email, [line(product, 1)])


async def test_empty_items_rejected(order_engine):
    with pytest.raises(ValidationError):
        await order_engine.placement.place_order("Alice", "a@example.com", [])


async def test_failed_order_creation_releases_stock(order_engine, make_product, stock_of):
    p1 = await make_product("P1", stock=5)
    p2 = await make_product("P2", stock=5)
    placement = PlacementService(
        order_engine.catalog,
        order_engine.coordinator,
        FailingOrderStore(order_engine.session_factory, order_engine.order_store.publisher),
        order_engine.lifecycle,
    )

    with pytest.raises(PersistenceFailure):
        await placement.place_order("Alice", "a@example.com", [line(p1, 2), line(p2, 3)])

    assert await stock_of(p1) == 5
    assert await stock_of(p2) == 5


async def test_repeated_product_reserves_each_line(order_engine, make_product, stock_of):
    product = await make_product(price="10", stock=5)
    order = await order_engine.placement.place_order(
        "Alice", "a@example.com", [line(product, 2), line(product, 3)]
    )
    assert order.total == Decimal("50")
    assert await stock_of(product) == 0

    with pytest.raises(InsufficientStock):
        await order_engine.placement.place_order("Bob", "b@example.com", [line(product, 1)])


async def test_status_and_assignment_through_facade(order_engine, make_product):
    product = await make_product(stock=5)
    order = await order_engine.placement.place_order("Alice", "a@example.com", [line(product, 1)])

    paid = await order_engine.placement.update_order_status(order.id, OrderStatus.PAID)
    assert paid.status == OrderStatus.PAID

    shipped = await order_engine.placement.assign_order(order.id, "agent@x.com")
    assert shipped.status == OrderStatus.SHIPPED
    assert shipped.assigned_to == "agent@x.com"

    overridden = await order_engine.placement.override_order_status(order.id, OrderStatus.PENDING)
    assert overridden.status == OrderStatus.PENDING


async def test_broken_publisher_does_not_undo_placement(
    order_engine, make_product, stock_of, broken_redis
):
    product = await make_product(stock=5)
    engine = build_order_engine(order_engine.session_factory, broken_redis)

    order = await engine.placement.place_order("Alice", "a@example.com", [line(product, 2)])

    assert await stock_of(product) == 3
    assert [o.id for o in await engine.placement.list_orders()] == [order.id]


async def test_broken_order_notification_keeps_debited_stock(
    order_engine, make_product, stock_of, broken_redis
):
    product = await make_product(stock=5)
    order_engine.order_store.publisher = EventPublisher(broken_redis)

    order = await order_engine.placement.place_order("Alice", "a@example.com", [line(product, 2)])

    assert await stock_of(product) == 3
    assert [o.id for o in await order_engine.placement.list_orders()] == [order.id]


@pytest.mark.parametrize("quantity", [2**31, 10**20])
async def test_oversized_quantity_rejected(order_engine, make_product, stock_of, quantity):
    product = await make_product(stock=5)
    item = LineItemRequest.model_construct(product_id=product.id, quantity=quantity)

    with pytest.raises(ValidationError):
        await order_engine.placement.place_order("Alice", "a@example.com", [item])

    assert await stock_of(product) == 5


async def test_cancelled_placement_still_completes(
    order_engine, make_product, stock_of, gated_redis
):
    product = await make_product(stock=5)
    engine = build_order_engine(order_engine.session_factory, gated_redis)

    task = asyncio.ensure_future(
        engine.placement.place_order("Alice", "a@example.com", [line(product, 1)])
    )
    await gated_redis.entered.wait()
    task.cancel()
    gated_redis.gate.set()

    with pytest.raises(asyncio.CancelledError):
        await task
    # 確定処理はキャンセル後もバックグラウンドで完了する
    await asyncio.wait_for(gated_redis.order_published.wait(), timeout=5)

    assert await stock_of(product) == 4
    assert len(await engine.placement.list_orders()) == 1
