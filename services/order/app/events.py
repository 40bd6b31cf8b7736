"""
Order Service — イベント定義

注文のライフサイクルで発生した事実をイベントとして定義する。
コミット後に Redis Pub/Sub の order_events チャネルへ発行する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime

from pydantic import BaseModel

ORDER_EVENTS_CHANNEL = "order_events"


class OrderLine(BaseModel):
    product_id: int
    qty: int
    unit_price_cents: int


class OrderCreated(BaseModel):
    """注文が作成された（在庫引き当て済み）"""
    order_id: int
    customer_id: int
    total_cents: int
    items: list[OrderLine]
    timestamp: datetime


class OrderConfirmed(BaseModel):
    """注文が確定された"""
    order_id: int
    timestamp: datetime


class OrderCanceled(BaseModel):
    """注文がキャンセルされた（在庫は戻し済み）"""
    order_id: int
    restored: list[OrderLine]
    timestamp: datetime
