"""
Customer Service — FastAPI エントリーポイント

顧客レジストリ。Order Service と Saga Service はここを
内部 API (GET /internal/customers/{id}) 経由で参照するだけで、
顧客データを直接持たない。
  uvicorn --factory services.customer.app.main:create_app

内部 API は共有シークレット (Bearer トークン) で保護する。
"""

import logging
import secrets
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import customers, schema
from .config import Settings, configure_logging
from .errors import CustomerNotFound, CustomerServiceError, Unauthorized

logger = logging.getLogger(__name__)

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ── Request Models ───────────────────────────────


class CreateCustomerRequest(BaseModel):
    name: str = Field(min_length=2, max_length=255)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    phone: str | None = Field(default=None, max_length=50)


class UpdateCustomerRequest(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=255)
    email: str | None = Field(default=None, pattern=EMAIL_PATTERN, max_length=255)
    phone: str | None = Field(default=None, max_length=50)

    @model_validator(mode="after")
    def at_least_one_field(self) -> "UpdateCustomerRequest":
        if self.name is None and self.email is None and self.phone is None:
            raise ValueError("at least one field is required")
        return self


def require_service_token(
    request: Request,
    authorization: str | None = Header(default=None),
) -> None:
    expected = f"Bearer {request.app.state.settings.service_token}"
    if authorization is None or not secrets.compare_digest(authorization, expected):
        raise Unauthorized()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = create_async_engine(settings.database_url, echo=False)
        await schema.create_all(engine)
        app.state.async_session = sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        yield
        await engine.dispose()

    app = FastAPI(title="Customer Service", lifespan=lifespan)
    app.state.settings = settings

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
        return response

    @app.exception_handler(CustomerServiceError)
    async def handle_service_error(request: Request, exc: CustomerServiceError):
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

    # ── 顧客 CRUD ─────────────────────────────────

    @app.post("/customers", status_code=201)
    async def create_customer(req: CreateCustomerRequest, request: Request):
        async with request.app.state.async_session() as session:
            customer = await customers.create_customer(
                session, req.name, req.email, req.phone
            )
        return {"success": True, "data": customer}

    @app.get("/customers/{customer_id}")
    async def get_customer(customer_id: int, request: Request):
        async with request.app.state.async_session() as session:
            customer = await customers.get_customer(session, customer_id)
        if customer is None:
            raise CustomerNotFound(customer_id)
        return {"success": True, "data": customer}

    @app.get("/customers")
    async def search_customers(
        request: Request,
        search: str = "",
        cursor: int = 0,
        limit: int = customers.DEFAULT_PAGE_SIZE,
    ):
        async with request.app.state.async_session() as session:
            result = await customers.search_customers(session, search, cursor, limit)
        return {"success": True, **result}

    @app.put("/customers/{customer_id}")
    async def update_customer(
        customer_id: int, req: UpdateCustomerRequest, request: Request
    ):
        async with request.app.state.async_session() as session:
            customer = await customers.update_customer(
                session, customer_id, name=req.name, email=req.email, phone=req.phone
            )
        return {"success": True, "data": customer}

    @app.delete("/customers/{customer_id}")
    async def delete_customer(customer_id: int, request: Request):
        async with request.app.state.async_session() as session:
            await customers.delete_customer(session, customer_id)
        return {"success": True, "message": "Customer deleted successfully"}

    # ── 内部 API (サービス間) ────────────────────

    @app.get(
        "/internal/customers/{customer_id}",
        dependencies=[Depends(require_service_token)],
    )
    async def get_customer_internal(customer_id: int, request: Request):
        async with request.app.state.async_session() as session:
            customer = await customers.get_customer(session, customer_id)
        if customer is None:
            raise CustomerNotFound(customer_id)
        return {"success": True, "data": customer}

    @app.get("/health")
    async def health():
        return {"success": True, "status": "ok", "service": "customer-service"}

    return app
