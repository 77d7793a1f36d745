"""
Order Engine — 組み立て

台帳 → コーディネーター → ストア → ライフサイクル → 確定サービス の順に
依存を注入して 1 つにまとめる。
"""

from dataclasses import dataclass

import redis.asyncio as aioredis
from sqlalchemy.orm import sessionmaker

from .catalog import Catalog
from .ledger import ProductLedger
from .lifecycle import OrderLifecycle
from .order_store import OrderStore
from .placement import PlacementService
from .publisher import EventPublisher
from .reservation import ReservationCoordinator


@dataclass
class OrderEngine:
    session_factory: sessionmaker
    catalog: Catalog
    ledger: ProductLedger
    coordinator: ReservationCoordinator
    order_store: OrderStore
    lifecycle: OrderLifecycle
    placement: PlacementService


def build_order_engine(session_factory: sessionmaker, redis: aioredis.Redis) -> OrderEngine:
    publisher = EventPublisher(redis)
    catalog = Catalog(session_factory)
    ledger = ProductLedger(session_factory, publisher)
    coordinator = ReservationCoordinator(ledger)
    order_store = OrderStore(session_factory, publisher)
    lifecycle = OrderLifecycle(order_store)
    return OrderEngine(
        session_factory=session_factory,
        catalog=catalog,
        ledger=ledger,
        coordinator=coordinator,
        order_store=order_store,
        lifecycle=lifecycle,
        placement=PlacementService(catalog, coordinator, order_store, lifecycle),
    )
