"""Reservation Coordinator: all-or-nothing reservation with compensation."""
import asyncio
from uuid import uuid4

import pytest

from order_engine.errors import (
    CompensationFailure,
    InsufficientStock,
    PersistenceFailure,
    ProductNotFound,
    ValidationError,
)
from order_engine.ledger import ProductLedger
from order_engine.publisher import EventPublisher
from order_engine.reservation import ReservationCoordinator

pytestmark = pytest.mark.anyio


class RecordingLedger:
    """Delegates to the real ledger and records release order."""

    def __init__(self, ledger, fail_release_for=()):
        self.ledger = ledger
        self.fail_release_for = set(fail_release_for)
        self.released = []

    async def try_reserve(self, product_id, quantity):
        return await self.ledger.try_reserve(product_id, quantity)

    async def release(self, product_id, quantity):
        if product_id in self.fail_release_for:
            raise PersistenceFailure("store unavailable")
        self.released.append(product_id)
        return await self.ledger.release(product_id, quantity)


async def test_reserve_all_success(order_engine, make_product, stock_of):
    p1 = await make_product("P1", stock=5)
    p2 = await make_product("P2", stock=3)

    reservations = await order_engine.coordinator.reserve_all([(p1.id, 2), (p2.id, 3)])

    assert [(r.product_id, r.quantity) for r in reservations] == [(p1.id, 2), (p2.id, 3)]
    assert await stock_of(p1) == 3
    assert await stock_of(p2) == 0


async def test_insufficient_item_rolls_back_earlier_items(order_engine, make_product, stock_of):
    p1 = await make_product("P1", price="100", stock=5)
    p2 = await make_product("P2", price="50", stock=0)

    with pytest.raises(InsufficientStock) as exc_info:
        await order_engine.coordinator.reserve_all([(p1.id, 2), (p2.id, 1)])

    assert exc_info.value.product_id == p2.id
    assert exc_info.value.shortfall == 1
    assert await stock_of(p1) == 5
    assert await stock_of(p2) == 0


async def test_unknown_product_rolls_back(order_engine, make_product, stock_of):
    p1 = await make_product("P1", stock=5)
    missing = uuid4()

    with pytest.raises(ProductNotFound) as exc_info:
        await order_engine.coordinator.reserve_all([(p1.id, 1), (missing, 1)])

    assert exc_info.value.product_id == missing
    assert await stock_of(p1) == 5


async def test_empty_demands_rejected(order_engine):
    with pytest.raises(ValidationError):
        await order_engine.coordinator.reserve_all([])


async def test_rollback_releases_in_reverse_order(order_engine, make_product):
    p1 = await make_product("P1", stock=5)
    p2 = await make_product("P2", stock=5)
    p3 = await make_product("P3", stock=0)
    ledger = RecordingLedger(order_engine.ledger)
    coordinator = ReservationCoordinator(ledger)

    with pytest.raises(InsufficientStock):
        await coordinator.reserve_all([(p1.id, 1), (p2.id, 1), (p3.id, 1)])

    assert ledger.released == [p2.id, p1.id]


async def test_failed_compensation_is_surfaced(order_engine, make_product, stock_of):
    p1 = await make_product("P1", stock=5)
    p2 = await make_product("P2", stock=5)
    p3 = await make_product("P3", stock=0)
    ledger = RecordingLedger(order_engine.ledger, fail_release_for=[p1.id])
    coordinator = ReservationCoordinator(ledger)

    with pytest.raises(CompensationFailure) as exc_info:
        await coordinator.reserve_all([(p1.id, 2), (p2.id, 2), (p3.id, 1)])

    assert [r.product_id for r in exc_info.value.unreleased] == [p1.id]
    assert isinstance(exc_info.value.__context__, InsufficientStock)
    # 解放できた分は戻っている
    assert await stock_of(p2) == 5
    assert await stock_of(p1) == 3


async def test_release_of_deleted_product_is_skipped(order_engine, make_product, stock_of):
    p1 = await make_product("P1", stock=5)
    p2 = await make_product("P2", stock=5)
    reservations = await order_engine.coordinator.reserve_all([(p1.id, 1), (p2.id, 2)])
    await order_engine.catalog.delete_product(p1.id)

    await order_engine.coordinator.release_all(reservations)

    assert await stock_of(p2) == 5


async def test_cancellation_after_commit_releases_reservation(
    order_engine, make_product, stock_of, gated_redis
):
    a = await make_product("A", stock=5)
    b = await make_product("B", stock=5)
    ledger = ProductLedger(order_engine.session_factory, EventPublisher(gated_redis))
    coordinator = ReservationCoordinator(ledger)

    task = asyncio.ensure_future(coordinator.reserve_all([(a.id, 1), (b.id, 1)]))
    # A の減算はコミット済みで、通知の途中で止まっている
    await gated_redis.entered.wait()
    assert await stock_of(a) == 4

    task.cancel()
    gated_redis.gate.set()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await stock_of(a) == 5
    assert await stock_of(b) == 5
    assert "InventoryReleased" in gated_redis.event_types("inventory_events")


async def test_broken_publisher_does_not_lose_reservations(
    order_engine, make_product, stock_of, broken_redis
):
    a = await make_product("A", stock=5)
    b = await make_product("B", stock=0)
    ledger = ProductLedger(order_engine.session_factory, EventPublisher(broken_redis))
    coordinator = ReservationCoordinator(ledger)

    with pytest.raises(InsufficientStock):
        await coordinator.reserve_all([(a.id, 2), (b.id, 1)])

    assert await stock_of(a) == 5
