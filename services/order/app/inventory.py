"""
Order Service — 在庫台帳 (Inventory Ledger)

在庫の引き当て(Reserve)と戻し(Restore)を扱う。
どちらも呼び出し元のトランザクション内で実行され、
商品行単位のロック (SELECT ... FOR UPDATE) で同時更新を直列化する。

複数商品の注文では、リクエスト順ではなく商品 ID の昇順でロックを取る。
2 つの注文が同じ商品群を逆順で要求してもデッドロックしない。
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InsufficientStock, ProductNotFound
from .schema import products

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ItemRequest:
    product_id: int
    qty: int


@dataclass(frozen=True)
class Reservation:
    """1 明細分の引き当て結果。単価は引き当て時点のスナップショット。"""

    product_id: int
    qty: int
    unit_price_cents: int

    @property
    def subtotal_cents(self) -> int:
        return self.unit_price_cents * self.qty


async def reserve_stock(
    session: AsyncSession,
    product_id: int,
    qty: int,
    now: datetime,
) -> int:
    """
    在庫引き当て

    1. 商品行をロックして現在の在庫を読む
    2. 在庫不足なら InsufficientStock (トランザクションごとロールバックされる)
    3. 在庫を qty だけ減らし、引き当て時点の単価を返す
    """
    result = await session.execute(
        select(products.c.id, products.c.price_cents, products.c.stock)
        .where(products.c.id == product_id)
        .with_for_update()
    )
    row = result.first()
    if row is None:
        raise ProductNotFound(product_id)

    if row.stock < qty:
        raise InsufficientStock(product_id, requested=qty, available=row.stock)

    await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock=products.c.stock - qty, updated_at=now)
    )
    logger.debug("Reserved %d of product %d (stock %d -> %d)",
                 qty, product_id, row.stock, row.stock - qty)
    return row.price_cents


async def restore_stock(
    session: AsyncSession,
    product_id: int,
    qty: int,
    now: datetime,
) -> None:
    """在庫戻し（注文キャンセル時のみ使用）"""
    await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock=products.c.stock + qty, updated_at=now)
    )


async def reserve_items(
    session: AsyncSession,
    items: Iterable[ItemRequest],
    now: datetime,
) -> list[Reservation]:
    """
    注文の全明細を引き当てる。

    どれか 1 つでも失敗すれば例外が伝播し、呼び出し元のトランザクションが
    それまでの引き当てをすべてロールバックする (all-or-nothing)。
    戻り値はリクエスト順を保つ。
    """
    items = list(items)
    prices: dict[int, int] = {}
    for item in sorted(items, key=lambda i: i.product_id):
        prices[item.product_id] = await reserve_stock(
            session, item.product_id, item.qty, now
        )

    return [
        Reservation(
            product_id=item.product_id,
            qty=item.qty,
            unit_price_cents=prices[item.product_id],
        )
        for item in items
    ]
