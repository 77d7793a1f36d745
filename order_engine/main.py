"""
Order Engine — FastAPI エントリーポイント

注文確定・注文一覧・ステータス更新・配送担当者割り当てを公開する。
商品カタログと在庫調整は管理画面からの補助 API。

  ┌──────────┐     ┌──────────────────────────────────────┐
  │  Admin   │────▶│ Placement Service                    │
  │ Console  │     │  ├─ Reservation Coordinator ─ Ledger │
  │          │     │  ├─ Order Store                      │
  │          │     │  └─ Order Lifecycle                  │
  └──────────┘     └──────────────────────────────────────┘
"""

import logging
from contextlib import asynccontextmanager
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from . import event_store
from .config import Settings, settings as default_settings, setup_logging
from .db import create_engine, create_session_factory, init_schema
from .engine import OrderEngine, build_order_engine
from .errors import (
    InsufficientStock,
    InvalidTransition,
    NotFound,
    OrderEngineError,
    PersistenceFailure,
    PlacementError,
    ValidationError,
)
from .models import (
    AdjustStockRequest,
    AssignRequest,
    CreateProductRequest,
    Order,
    PlaceOrderRequest,
    Product,
    StatusRequest,
    UpdateProductRequest,
)

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (ValidationError, 400),
    (NotFound, 404),
    (InsufficientStock, 409),
    (InvalidTransition, 409),
    (PlacementError, 409),
    (PersistenceFailure, 503),
)

router = APIRouter()


def _engine(request: Request) -> OrderEngine:
    return request.app.state.order_engine


# ── 注文 (Orders) ────────────────────────────────


@router.post("/orders", status_code=201, response_model=Order)
async def place_order(req: PlaceOrderRequest, request: Request):
    """注文確定（在庫引き当て＋注文作成）"""
    return await _engine(request).placement.place_order(
        customer_name=req.customer_name,
        customer_email=req.customer_email,
        items=req.items,
        paid=req.paid,
        order_code=req.order_code,
    )


@router.get("/orders", response_model=list[Order])
async def list_orders(request: Request):
    """全注文を新しい順に取得"""
    return await _engine(request).placement.list_orders()


@router.get("/orders/{order_id}", response_model=Order)
async def get_order(order_id: UUID, request: Request):
    return await _engine(request).placement.get_order(order_id)


@router.post("/orders/{order_id}/status", response_model=Order)
async def update_order_status(order_id: UUID, req: StatusRequest, request: Request):
    """状態遷移表に沿ったステータス更新"""
    return await _engine(request).placement.update_order_status(order_id, req.status)


@router.put("/orders/{order_id}/status", response_model=Order)
async def override_order_status(order_id: UUID, req: StatusRequest, request: Request):
    """管理者用のステータス上書き（遷移の検証なし）"""
    return await _engine(request).placement.override_order_status(order_id, req.status)


@router.post("/orders/{order_id}/assign", response_model=Order)
async def assign_order(order_id: UUID, req: AssignRequest, request: Request):
    """配送担当者の割り当て / 解除"""
    return await _engine(request).placement.assign_order(order_id, req.assigned_to)


# ── 商品 (Catalog) ───────────────────────────────


@router.get("/products", response_model=list[Product])
async def list_products(request: Request):
    return await _engine(request).catalog.list_products()


@router.post("/products", status_code=201, response_model=Product)
async def create_product(req: CreateProductRequest, request: Request):
    return await _engine(request).catalog.create_product(
        name=req.name, price=req.price, stock=req.stock, image=req.image
    )


@router.get("/products/{product_id}", response_model=Product)
async def get_product(product_id: UUID, request: Request):
    return await _engine(request).catalog.get_product(product_id)


@router.patch("/products/{product_id}", response_model=Product)
async def update_product(product_id: UUID, req: UpdateProductRequest, request: Request):
    return await _engine(request).catalog.update_product(
        product_id, name=req.name, image=req.image, price=req.price
    )


@router.delete("/products/{product_id}")
async def delete_product(product_id: UUID, request: Request):
    await _engine(request).catalog.delete_product(product_id)
    return {"msg": "Deleted"}


@router.post("/products/{product_id}/adjust-stock", response_model=Product)
async def adjust_stock(product_id: UUID, req: AdjustStockRequest, request: Request):
    """在庫調整（入荷など）。結果が負なら 0 に丸める。"""
    engine = _engine(request)
    stock = await engine.ledger.adjust(product_id, req.delta)
    # 在庫数は調整結果をそのまま返す（再読込の間に別の引き当てが入り得る）
    product = await engine.catalog.get_product(product_id)
    return product.model_copy(update={"stock": stock})


# ── Event Store (監査・デバッグ用) ───────────────


@router.get("/events")
async def get_all_events(request: Request):
    async with _engine(request).session_factory() as session:
        return await event_store.load_all_events(session)


@router.get("/events/{aggregate_id}")
async def get_aggregate_events(aggregate_id: UUID, request: Request):
    async with _engine(request).session_factory() as session:
        return await event_store.load_events(session, aggregate_id)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "order-engine"}


async def handle_engine_error(request: Request, exc: OrderEngineError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS if isinstance(exc, cls)),
        500,
    )
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(settings: Settings | None = None, redis: aioredis.Redis | None = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db_engine = create_engine(settings.database_url, echo=settings.db_echo)
        await init_schema(db_engine)
        redis_pool = redis or aioredis.from_url(settings.redis_url, decode_responses=True)
        app.state.order_engine = build_order_engine(create_session_factory(db_engine), redis_pool)
        yield
        if redis is None:
            await redis_pool.aclose()
        await db_engine.dispose()

    app = FastAPI(title="Order Engine", lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(OrderEngineError, handle_engine_error)
    return app


setup_logging()
app = create_app()
