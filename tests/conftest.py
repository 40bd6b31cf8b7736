from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.order.app import products, schema
from services.order.app.errors import CustomerNotFound, CustomerServiceUnavailable


class FakeCustomerDirectory:
    """顧客サービスの代わりに、登録済み ID だけを返す。"""

    def __init__(self, known_ids=(1,), unavailable=False):
        self.known_ids = set(known_ids)
        self.unavailable = unavailable
        self.calls = []

    async def get_customer(self, customer_id):
        self.calls.append(customer_id)
        if self.unavailable:
            raise CustomerServiceUnavailable(customer_id)
        if customer_id not in self.known_ids:
            raise CustomerNotFound(customer_id)
        return {
            "id": customer_id,
            "name": f"Customer {customer_id}",
            "email": f"customer{customer_id}@example.com",
            "phone": None,
        }


class FakeRedis:
    def __init__(self):
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"


@pytest_asyncio.fixture
async def engine(database_url):
    engine = create_async_engine(database_url)
    await schema.create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def customers():
    return FakeCustomerDirectory(known_ids={1, 2})


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def make_product(session_factory):
    async def _make_product(product_id, price_cents=1000, stock=5, sku=None):
        now = datetime.now(timezone.utc)
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    insert(schema.products).values(
                        id=product_id,
                        sku=sku or f"SKU-{product_id}",
                        name=f"Product {product_id}",
                        price_cents=price_cents,
                        stock=stock,
                        created_at=now,
                        updated_at=now,
                    )
                )
        return product_id

    return _make_product


@pytest.fixture
def stock_of(session_factory):
    async def _stock_of(product_id):
        async with session_factory() as session:
            product = await products.get_product(session, product_id)
        return product["stock"]

    return _stock_of
