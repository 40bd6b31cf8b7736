"""
Order Service — FastAPI エントリーポイント

商品(在庫台帳)と注文のライフサイクルを HTTP API として公開する。
  uvicorn --factory services.order.app.main:create_app

書き込み系の注文コマンド(作成・確定・キャンセル)は asyncio.shield で包む。
クライアントが途中で切断しても、トランザクションのコミット/ロールバックは
最後まで実行される。

レスポンスは {success, data?, error?} のエンベロープで返す。
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Literal

import redis.asyncio as aioredis
from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import commands, products, queries, schema
from .config import Settings, configure_logging
from .customers import CustomerDirectory
from .errors import OrderNotFound, OrderServiceError, ProductNotFound
from .inventory import ItemRequest

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class CreateProductRequest(BaseModel):
    sku: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=2, max_length=255)
    price_cents: int = Field(ge=0)
    stock: int = Field(ge=0)


class UpdateProductRequest(BaseModel):
    price_cents: int | None = Field(default=None, ge=0)
    stock: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def at_least_one_field(self) -> "UpdateProductRequest":
        if self.price_cents is None and self.stock is None:
            raise ValueError("at least one of price_cents or stock is required")
        return self


class OrderItemRequest(BaseModel):
    product_id: int = Field(gt=0)
    qty: int = Field(gt=0)


class CreateOrderRequest(BaseModel):
    customer_id: int = Field(gt=0)
    items: list[OrderItemRequest] = Field(min_length=1)


def create_app(
    settings: Settings | None = None,
    customers: CustomerDirectory | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_async_engine(settings.database_url, echo=False)
        await schema.create_all(engine)
        app.state.async_session = sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        app.state.redis = (
            aioredis.from_url(settings.redis_url, decode_responses=True)
            if settings.redis_url
            else None
        )
        app.state.customers = customers or CustomerDirectory(
            settings.customers_api_base,
            settings.service_token,
            timeout=settings.customer_lookup_timeout,
        )
        yield
        if app.state.redis is not None:
            await app.state.redis.aclose()
        await engine.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings

    _install_handlers(app)
    _install_routes(app, settings)
    return app


async def _run_command(request: Request, command, *args, **kwargs):
    """注文コマンドを専用セッションで実行する。呼び出し元のキャンセルから保護する。"""

    async def unit_of_work():
        async with request.app.state.async_session() as session:
            return await command(session, request.app.state.redis, *args, **kwargs)

    return await asyncio.shield(unit_of_work())


# ── エラーハンドリング ───────────────────────────


def _install_handlers(app: FastAPI) -> None:
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
        return response

    @app.exception_handler(OrderServiceError)
    async def handle_service_error(request: Request, exc: OrderServiceError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        error = exc.errors()[0]
        loc = ".".join(str(p) for p in error["loc"] if p != "body")
        message = f"{loc}: {error['msg']}" if loc else error["msg"]
        return JSONResponse(status_code=400, content={"success": False, "error": message})

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error"},
        )


def _install_routes(app: FastAPI, settings: Settings) -> None:
    # ── 商品 ─────────────────────────────────────

    @app.post("/products", status_code=201)
    async def create_product(req: CreateProductRequest, request: Request):
        async with request.app.state.async_session() as session:
            product = await products.create_product(
                session, req.sku, req.name, req.price_cents, req.stock
            )
        return {"success": True, "data": product}

    @app.get("/products/{product_id}")
    async def get_product(product_id: int, request: Request):
        async with request.app.state.async_session() as session:
            product = await products.get_product(session, product_id)
        if product is None:
            raise ProductNotFound(product_id)
        return {"success": True, "data": product}

    @app.patch("/products/{product_id}")
    async def update_product(product_id: int, req: UpdateProductRequest, request: Request):
        async with request.app.state.async_session() as session:
            product = await products.update_product(
                session, product_id, price_cents=req.price_cents, stock=req.stock
            )
        return {"success": True, "data": product}

    @app.get("/products")
    async def search_products(
        request: Request,
        search: str = "",
        cursor: int = 0,
        limit: int = queries.DEFAULT_PAGE_SIZE,
    ):
        async with request.app.state.async_session() as session:
            result = await products.search_products(session, search, cursor, limit)
        return {"success": True, **result}

    # ── 注文 ─────────────────────────────────────

    @app.post("/orders", status_code=201)
    async def create_order(
        req: CreateOrderRequest,
        request: Request,
        idempotency_key: str | None = Header(default=None, alias="X-Idempotency-Key"),
    ):
        order = await _run_command(
            request,
            commands.create_order,
            request.app.state.customers,
            req.customer_id,
            [ItemRequest(product_id=i.product_id, qty=i.qty) for i in req.items],
            idempotency_key=idempotency_key,
            idempotency_ttl=settings.idempotency_ttl,
        )
        return {"success": True, "data": order}

    @app.get("/orders/{order_id}")
    async def get_order(order_id: int, request: Request):
        async with request.app.state.async_session() as session:
            order = await queries.get_order(session, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return {"success": True, "data": order}

    @app.get("/orders")
    async def search_orders(
        request: Request,
        status: Literal["CREATED", "CONFIRMED", "CANCELED"] | None = None,
        created_from: datetime | None = Query(default=None, alias="from"),
        created_to: datetime | None = Query(default=None, alias="to"),
        cursor: int = 0,
        limit: int = queries.DEFAULT_PAGE_SIZE,
    ):
        async with request.app.state.async_session() as session:
            result = await queries.search_orders(
                session, status, created_from, created_to, cursor, limit
            )
        return {"success": True, **result}

    @app.post("/orders/{order_id}/confirm")
    async def confirm_order(
        order_id: int,
        request: Request,
        idempotency_key: str | None = Header(default=None, alias="X-Idempotency-Key"),
    ):
        order = await _run_command(
            request,
            commands.confirm_order,
            order_id,
            idempotency_key=idempotency_key,
            idempotency_ttl=settings.idempotency_ttl,
        )
        return {"success": True, "data": order}

    @app.post("/orders/{order_id}/cancel")
    async def cancel_order(order_id: int, request: Request):
        order = await _run_command(
            request,
            commands.cancel_order,
            order_id,
            cancel_window=settings.cancel_window,
        )
        return {"success": True, "data": order}

    @app.get("/health")
    async def health():
        return {"success": True, "status": "ok", "service": "order-service"}
