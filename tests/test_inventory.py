"""Tests for the inventory ledger (stock reservation and restore)."""

from datetime import datetime, timezone

import pytest

from services.order.app import inventory
from services.order.app.errors import InsufficientStock, ProductNotFound
from services.order.app.inventory import ItemRequest

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


class TestReserveStock:

    @pytest.mark.asyncio
    async def test_reserve_decrements_stock_and_returns_price(
        self, session_factory, make_product, stock_of
    ):
        await make_product(10, price_cents=1000, stock=5)

        async with session_factory() as session:
            async with session.begin():
                price = await inventory.reserve_stock(session, 10, 2, NOW)

        assert price == 1000
        assert await stock_of(10) == 3

    @pytest.mark.asyncio
    async def test_reserve_exact_stock_leaves_zero(self, session_factory, make_product, stock_of):
        await make_product(10, stock=4)

        async with session_factory() as session:
            async with session.begin():
                await inventory.reserve_stock(session, 10, 4, NOW)

        assert await stock_of(10) == 0

    @pytest.mark.asyncio
    async def test_insufficient_stock_rejected(self, session_factory, make_product, stock_of):
        await make_product(10, stock=1)

        with pytest.raises(InsufficientStock) as exc_info:
            async with session_factory() as session:
                async with session.begin():
                    await inventory.reserve_stock(session, 10, 2, NOW)

        assert exc_info.value.requested == 2
        assert exc_info.value.available == 1
        assert await stock_of(10) == 1

    @pytest.mark.asyncio
    async def test_unknown_product_rejected(self, session_factory):
        with pytest.raises(ProductNotFound, match="Product 99 not found"):
            async with session_factory() as session:
                async with session.begin():
                    await inventory.reserve_stock(session, 99, 1, NOW)


class TestRestoreStock:

    @pytest.mark.asyncio
    async def test_restore_increments_stock(self, session_factory, make_product, stock_of):
        await make_product(10, stock=3)

        async with session_factory() as session:
            async with session.begin():
                await inventory.restore_stock(session, 10, 2, NOW)

        assert await stock_of(10) == 5


class TestReserveItems:

    @pytest.mark.asyncio
    async def test_locks_in_ascending_product_order(
        self, session_factory, make_product, monkeypatch
    ):
        await make_product(3, price_cents=300)
        await make_product(1, price_cents=100)
        await make_product(2, price_cents=200)

        locked = []
        original = inventory.reserve_stock

        async def recording_reserve(session, product_id, qty, now):
            locked.append(product_id)
            return await original(session, product_id, qty, now)

        monkeypatch.setattr(inventory, "reserve_stock", recording_reserve)

        items = [ItemRequest(3, 1), ItemRequest(1, 2), ItemRequest(2, 1)]
        async with session_factory() as session:
            async with session.begin():
                reservations = await inventory.reserve_items(session, items, NOW)

        assert locked == [1, 2, 3]
        # 戻り値はリクエスト順
        assert [r.product_id for r in reservations] == [3, 1, 2]
        assert [r.subtotal_cents for r in reservations] == [300, 200, 200]

    @pytest.mark.asyncio
    async def test_failure_rolls_back_earlier_reservations(
        self, session_factory, make_product, stock_of
    ):
        await make_product(1, stock=5)
        await make_product(2, stock=1)

        items = [ItemRequest(1, 3), ItemRequest(2, 2)]
        with pytest.raises(InsufficientStock):
            async with session_factory() as session:
                async with session.begin():
                    await inventory.reserve_items(session, items, NOW)

        assert await stock_of(1) == 5
        assert await stock_of(2) == 1
