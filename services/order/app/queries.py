"""
Order Service — クエリハンドラ (Read 側)

注文ヘッダと明細を結合して返す。
一覧はオフセット方式のカーソルでページングする:
  cursor  = 次ページの開始位置
  hasMore = ページが満杯だったか
"""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import as_utc, order_items, orders, products

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def isoformat(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


def page_bounds(cursor: int, limit: int) -> tuple[int, int]:
    """cursor と limit を正規化する。limit は 1〜100 に丸める。"""
    return max(0, cursor), min(max(1, limit), MAX_PAGE_SIZE)


def _order_to_dict(row) -> dict:
    return {
        "id": row.id,
        "customer_id": row.customer_id,
        "status": row.status,
        "total_cents": row.total_cents,
        "created_at": isoformat(row.created_at),
        "updated_at": isoformat(row.updated_at),
        "confirmed_at": isoformat(row.confirmed_at),
        "canceled_at": isoformat(row.canceled_at),
    }


async def get_order(session: AsyncSession, order_id: int) -> dict | None:
    """注文を明細付きで取得する。"""
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.first()
    if not row:
        return None

    order = _order_to_dict(row)

    result = await session.execute(
        select(
            order_items.c.id,
            order_items.c.product_id,
            order_items.c.qty,
            order_items.c.unit_price_cents,
            order_items.c.subtotal_cents,
            products.c.name.label("product_name"),
            products.c.sku,
        )
        .join(products, order_items.c.product_id == products.c.id)
        .where(order_items.c.order_id == order_id)
        .order_by(order_items.c.id)
    )
    order["items"] = [
        {
            "id": item.id,
            "product_id": item.product_id,
            "product_name": item.product_name,
            "sku": item.sku,
            "qty": item.qty,
            "unit_price_cents": item.unit_price_cents,
            "subtotal_cents": item.subtotal_cents,
        }
        for item in result.fetchall()
    ]
    return order


async def search_orders(
    session: AsyncSession,
    status: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    cursor: int = 0,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict:
    """状態と作成日時で注文を絞り込む。新しい注文から順に返す。"""
    offset, page_limit = page_bounds(cursor, limit)

    query = select(orders)
    if status:
        query = query.where(orders.c.status == status)
    if created_from:
        query = query.where(orders.c.created_at >= as_utc(created_from))
    if created_to:
        query = query.where(orders.c.created_at <= as_utc(created_to))
    query = query.order_by(orders.c.id.desc()).limit(page_limit).offset(offset)

    result = await session.execute(query)
    rows = [_order_to_dict(row) for row in result.fetchall()]
    return {
        "data": rows,
        "cursor": offset + len(rows),
        "hasMore": len(rows) == page_limit,
    }

