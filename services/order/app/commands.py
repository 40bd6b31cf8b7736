"""
Order Service — コマンドハンドラ (注文ライフサイクル)

注文の状態遷移と、そのトランザクション境界を定義する。

    CREATED ──▶ CONFIRMED ──▶ CANCELED  (確定から一定時間内のみ)
       │                         ▲
       └─────────────────────────┘

- 各コマンドは 1 つのトランザクション (async with session.begin()) で実行され、
  例外が出ればすべてロールバックされる。
- 同時実行制御は行ロック (SELECT ... FOR UPDATE) のみ。楽観的ロックは使わない。
- 冪等性キー付きの作成・確定は結果を保存し、リトライ時はそれを再生する。
- Redis へのイベント発行はコミット後に行う。
"""

import json
import logging
from datetime import timedelta
from typing import Iterable

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import idempotency, inventory, queries
from .config import DEFAULT_CANCEL_WINDOW, DEFAULT_IDEMPOTENCY_TTL
from .customers import CustomerDirectory
from .errors import (
    CancelWindowExpired,
    CannotConfirmCanceled,
    IdempotencyKeyConflict,
    OrderNotFound,
    ValidationError,
)
from .events import (
    ORDER_EVENTS_CHANNEL,
    OrderCanceled,
    OrderConfirmed,
    OrderCreated,
    OrderLine,
)
from .inventory import ItemRequest
from .schema import as_utc, order_items, orders, utcnow

logger = logging.getLogger(__name__)

CREATED = "CREATED"
CONFIRMED = "CONFIRMED"
CANCELED = "CANCELED"


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    customers: CustomerDirectory,
    customer_id: int,
    items: Iterable[ItemRequest],
    idempotency_key: str | None = None,
    idempotency_ttl: timedelta = DEFAULT_IDEMPOTENCY_TTL,
) -> dict:
    """
    注文作成コマンド

    1. 冪等性キーが使用済みなら保存済みの結果を返す
    2. 顧客の存在を確認（トランザクション外。同時削除は許容する競合）
    3. 全明細の在庫を引き当て、注文と明細を挿入してコミット
       1 つでも引き当てに失敗すれば何も残らない
    4. OrderCreated を発行
    """
    items = list(items)
    if not items:
        raise ValidationError("items must contain at least one item")
    for item in items:
        if item.qty <= 0:
            raise ValidationError(f"qty for product {item.product_id} must be positive")

    request_hash = None
    if idempotency_key:
        request_hash = idempotency.fingerprint(
            {
                "customer_id": customer_id,
                "items": [[i.product_id, i.qty] for i in items],
            }
        )
        async with session.begin():
            record = await idempotency.lookup(
                session, idempotency_key, idempotency.ORDER_CREATION
            )
        if record:
            logger.info("Replaying order creation for key %s", idempotency_key)
            return _replay_creation(record, request_hash)

    await customers.get_customer(customer_id)

    now = utcnow()
    try:
        async with session.begin():
            reservations = await inventory.reserve_items(session, items, now)
            total_cents = sum(r.subtotal_cents for r in reservations)

            result = await session.execute(
                insert(orders).values(
                    customer_id=customer_id,
                    status=CREATED,
                    total_cents=total_cents,
                    created_at=now,
                    updated_at=now,
                )
            )
            order_id = result.inserted_primary_key[0]

            await session.execute(
                insert(order_items),
                [
                    {
                        "order_id": order_id,
                        "product_id": r.product_id,
                        "qty": r.qty,
                        "unit_price_cents": r.unit_price_cents,
                        "subtotal_cents": r.subtotal_cents,
                    }
                    for r in reservations
                ],
            )

            order = await queries.get_order(session, order_id)
            if idempotency_key:
                await idempotency.put(
                    session,
                    idempotency_key,
                    idempotency.ORDER_CREATION,
                    order_id,
                    order,
                    idempotency_ttl,
                    now,
                    request_hash=request_hash,
                )
    except idempotency.DuplicateKey:
        # 同じキーの別リクエストが先にコミットした。こちらの引き当ては破棄済み
        async with session.begin():
            record = await idempotency.lookup(
                session, idempotency_key, idempotency.ORDER_CREATION
            )
        if record is None:
            raise
        logger.info("Lost creation race for key %s, replaying", idempotency_key)
        return _replay_creation(record, request_hash)

    logger.info(
        "Order %s created for customer %s (total_cents=%s)",
        order_id, customer_id, total_cents,
    )
    await _publish(
        redis,
        OrderCreated(
            order_id=order_id,
            customer_id=customer_id,
            total_cents=total_cents,
            items=[
                OrderLine(
                    product_id=r.product_id,
                    qty=r.qty,
                    unit_price_cents=r.unit_price_cents,
                )
                for r in reservations
            ],
            timestamp=now,
        ),
    )
    return order


async def confirm_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: int,
    idempotency_key: str | None = None,
    idempotency_ttl: timedelta = DEFAULT_IDEMPOTENCY_TTL,
) -> dict:
    """
    注文確定コマンド

    キー付きで既に記録があれば、注文をロックする前に結果を再生する
    (再検証はしない)。CONFIRMED の注文はキー無しでも no-op で成功し、
    CANCELED の注文は確定できない。
    """
    if idempotency_key:
        async with session.begin():
            record = await idempotency.lookup(
                session, idempotency_key, idempotency.ORDER_CONFIRMATION
            )
        if record:
            logger.info("Replaying confirmation of order %s for key %s",
                        order_id, idempotency_key)
            return _replay_confirmation(record, order_id)

    now = utcnow()
    transitioned = False
    try:
        async with session.begin():
            row = await _lock_order(session, order_id)

            if row.status == CANCELED:
                raise CannotConfirmCanceled()

            if row.status != CONFIRMED:
                await session.execute(
                    update(orders)
                    .where(orders.c.id == order_id)
                    .values(status=CONFIRMED, confirmed_at=now, updated_at=now)
                )
                transitioned = True

            order = await queries.get_order(session, order_id)

            if transitioned and idempotency_key:
                await idempotency.put(
                    session,
                    idempotency_key,
                    idempotency.ORDER_CONFIRMATION,
                    order_id,
                    order,
                    idempotency_ttl,
                    now,
                )
    except idempotency.DuplicateKey:
        async with session.begin():
            record = await idempotency.lookup(
                session, idempotency_key, idempotency.ORDER_CONFIRMATION
            )
        if record is None:
            raise
        logger.info("Lost confirmation race for key %s, replaying", idempotency_key)
        return _replay_confirmation(record, order_id)

    if transitioned:
        logger.info("Order %s confirmed", order_id)
        await _publish(redis, OrderConfirmed(order_id=order_id, timestamp=now))
    return order


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: int,
    cancel_window: timedelta = DEFAULT_CANCEL_WINDOW,
) -> dict:
    """
    注文キャンセルコマンド

    CANCELED なら現在の状態を返す (no-op)。CONFIRMED は確定から
    cancel_window 以内のみキャンセル可能。保存済みの明細から在庫を戻す。
    """
    now = utcnow()
    restored: list[OrderLine] = []

    async with session.begin():
        row = await _lock_order(session, order_id)

        if row.status != CANCELED:
            if row.status == CONFIRMED:
                elapsed = now - as_utc(row.confirmed_at)
                if elapsed > cancel_window:
                    raise CancelWindowExpired(int(cancel_window.total_seconds() // 60))

            result = await session.execute(
                select(
                    order_items.c.product_id,
                    order_items.c.qty,
                    order_items.c.unit_price_cents,
                )
                .where(order_items.c.order_id == order_id)
                .order_by(order_items.c.product_id)
            )
            for line in result.fetchall():
                await inventory.restore_stock(session, line.product_id, line.qty, now)
                restored.append(
                    OrderLine(
                        product_id=line.product_id,
                        qty=line.qty,
                        unit_price_cents=line.unit_price_cents,
                    )
                )

            await session.execute(
                update(orders)
                .where(orders.c.id == order_id)
                .values(status=CANCELED, canceled_at=now, updated_at=now)
            )

        order = await queries.get_order(session, order_id)

    if restored:
        logger.info("Order %s canceled, restored %d line(s)", order_id, len(restored))
        await _publish(
            redis, OrderCanceled(order_id=order_id, restored=restored, timestamp=now)
        )
    return order


# ── 内部ヘルパー ─────────────────────────────────


async def _lock_order(session: AsyncSession, order_id: int):
    result = await session.execute(
        select(orders.c.id, orders.c.status, orders.c.confirmed_at)
        .where(orders.c.id == order_id)
        .with_for_update()
    )
    row = result.first()
    if row is None:
        raise OrderNotFound(order_id)
    return row


def _replay_creation(record: idempotency.IdempotencyRecord, request_hash: str) -> dict:
    if record.request_hash != request_hash:
        raise IdempotencyKeyConflict(
            "Idempotency key already used for a different order request"
        )
    return record.result()


def _replay_confirmation(record: idempotency.IdempotencyRecord, order_id: int) -> dict:
    if record.target_id != order_id:
        raise IdempotencyKeyConflict(
            f"Idempotency key already used for order {record.target_id}"
        )
    return record.result()


async def _publish(redis: aioredis.Redis | None, event: BaseModel) -> None:
    """コミット済みの変更を通知する。発行の失敗で変更は取り消さない。"""
    if redis is None:
        return
    try:
        await redis.publish(
            ORDER_EVENTS_CHANNEL,
            json.dumps(
                {
                    "event_type": type(event).__name__,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
    except RedisError:
        logger.exception("Failed to publish %s", type(event).__name__)
