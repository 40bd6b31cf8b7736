"""
Saga Service — FastAPI エントリーポイント

Saga オーケストレーターを HTTP API として公開する。
このサービスは自前の状態を持たず、Customer Service と
Order Service の呼び出し順序だけを制御する。
  uvicorn --factory services.saga.app.main:create_app
"""

import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import Settings, configure_logging
from .orchestrator import OrderSagaOrchestrator

logger = logging.getLogger(__name__)


class OrderItem(BaseModel):
    product_id: int = Field(gt=0)
    qty: int = Field(gt=0)


class PlaceOrderRequest(BaseModel):
    customer_id: int = Field(gt=0)
    items: list[OrderItem] = Field(min_length=1)
    idempotency_key: str = Field(min_length=1, max_length=255)
    correlation_id: str | None = None


def create_app(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        redis_pool = (
            aioredis.from_url(settings.redis_url, decode_responses=True)
            if settings.redis_url
            else None
        )
        app.state.orchestrator = OrderSagaOrchestrator(
            settings, redis=redis_pool, transport=transport
        )
        yield
        if redis_pool is not None:
            await redis_pool.aclose()

    app = FastAPI(title="Saga Orchestrator Service", lifespan=lifespan)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        error = exc.errors()[0]
        loc = ".".join(str(p) for p in error["loc"] if p != "body")
        message = f"{loc}: {error['msg']}" if loc else error["msg"]
        return JSONResponse(status_code=400, content={"success": False, "error": message})

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Orchestration error")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error"},
        )

    @app.post("/saga/place-order")
    async def place_order(req: PlaceOrderRequest, request: Request):
        """
        注文 Saga を実行する。

        顧客確認 → 注文作成 → 注文確定 の順に実行し、
        顧客情報と確定済み注文をまとめて返す。
        """
        outcome = await request.app.state.orchestrator.execute(
            customer_id=req.customer_id,
            items=[item.model_dump() for item in req.items],
            idempotency_key=req.idempotency_key,
            correlation_id=req.correlation_id,
        )
        return JSONResponse(status_code=outcome.status_code, content=outcome.body())

    @app.get("/health")
    async def health():
        return {"success": True, "status": "ok", "service": "saga-service"}

    return app
