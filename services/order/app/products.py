"""
Order Service — 商品管理

管理用の商品 CRUD。在庫数の直接更新もここで扱うが、
注文による在庫の増減は inventory.py を通してのみ行う。
"""

from sqlalchemy import insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import DuplicateSku, ProductNotFound
from .queries import DEFAULT_PAGE_SIZE, isoformat, page_bounds
from .schema import products, utcnow


def _product_to_dict(row) -> dict:
    return {
        "id": row.id,
        "sku": row.sku,
        "name": row.name,
        "price_cents": row.price_cents,
        "stock": row.stock,
        "created_at": isoformat(row.created_at),
        "updated_at": isoformat(row.updated_at),
    }


async def get_product(session: AsyncSession, product_id: int) -> dict | None:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.first()
    return _product_to_dict(row) if row else None


async def create_product(
    session: AsyncSession,
    sku: str,
    name: str,
    price_cents: int,
    stock: int,
) -> dict:
    now = utcnow()
    try:
        async with session.begin():
            result = await session.execute(
                insert(products).values(
                    sku=sku,
                    name=name,
                    price_cents=price_cents,
                    stock=stock,
                    created_at=now,
                    updated_at=now,
                )
            )
            product_id = result.inserted_primary_key[0]
            return await get_product(session, product_id)
    except IntegrityError as e:
        raise DuplicateSku(sku) from e


async def update_product(
    session: AsyncSession,
    product_id: int,
    price_cents: int | None = None,
    stock: int | None = None,
) -> dict:
    """価格・在庫の部分更新。"""
    values = {}
    if price_cents is not None:
        values["price_cents"] = price_cents
    if stock is not None:
        values["stock"] = stock

    async with session.begin():
        if values:
            values["updated_at"] = utcnow()
            result = await session.execute(
                update(products).where(products.c.id == product_id).values(**values)
            )
            if result.rowcount == 0:
                raise ProductNotFound(product_id)
        product = await get_product(session, product_id)
        if product is None:
            raise ProductNotFound(product_id)
        return product


async def search_products(
    session: AsyncSession,
    search: str = "",
    cursor: int = 0,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict:
    """SKU または商品名の部分一致で検索する。"""
    offset, page_limit = page_bounds(cursor, limit)

    query = select(products)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.where(or_(products.c.sku.like(pattern), products.c.name.like(pattern)))
    query = query.order_by(products.c.id.desc()).limit(page_limit).offset(offset)

    result = await session.execute(query)
    rows = [_product_to_dict(row) for row in result.fetchall()]
    return {
        "data": rows,
        "cursor": offset + len(rows),
        "hasMore": len(rows) == page_limit,
    }
