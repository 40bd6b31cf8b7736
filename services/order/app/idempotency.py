"""
Order Service — 冪等性ストア (Idempotency Store)

冪等性キーと、そのキーで最初に成功した操作の結果(JSON)を対応付ける。
リトライや重複配信では結果を再生(replay)するだけで、状態変更は再実行しない。

(key, target_type) の UNIQUE 制約で、同じキーを同時に使う 2 つの
リクエストのうち片方だけが書き込みに成功する。負けた側は DuplicateKey を
受け取り、勝った側の結果を読み直して返す。
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import as_utc, idempotency_keys

ORDER_CREATION = "order_creation"
ORDER_CONFIRMATION = "order_confirmation"


class DuplicateKey(Exception):
    def __init__(self, key: str, target_type: str) -> None:
        super().__init__(f"Idempotency key {key!r} already used for {target_type}")
        self.key = key
        self.target_type = target_type


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    target_type: str
    target_id: int
    status: str
    request_hash: str | None
    response_body: str
    expires_at: datetime

    def result(self) -> dict:
        return json.loads(self.response_body)


def fingerprint(payload: dict) -> str:
    """リクエスト内容のハッシュ。同じキーで別内容のリクエストを検出する。"""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


async def lookup(
    session: AsyncSession,
    key: str,
    target_type: str,
) -> IdempotencyRecord | None:
    result = await session.execute(
        select(idempotency_keys).where(
            idempotency_keys.c.key == key,
            idempotency_keys.c.target_type == target_type,
        )
    )
    row = result.first()
    if row is None:
        return None
    return IdempotencyRecord(
        key=row.key,
        target_type=row.target_type,
        target_id=row.target_id,
        status=row.status,
        request_hash=row.request_hash,
        response_body=row.response_body,
        expires_at=as_utc(row.expires_at),
    )


async def put(
    session: AsyncSession,
    key: str,
    target_type: str,
    target_id: int,
    result: dict,
    ttl: timedelta,
    now: datetime,
    request_hash: str | None = None,
) -> IdempotencyRecord:
    """
    結果を保存する。呼び出し元のトランザクション内で実行し、
    状態変更と同時にコミットされる。

    expires_at は外部のクリーンアップ用のメタデータで、このサービスは削除しない。
    """
    body = json.dumps(result, default=str)
    expires_at = now + ttl
    try:
        await session.execute(
            insert(idempotency_keys).values(
                key=key,
                target_type=target_type,
                target_id=target_id,
                status="completed",
                request_hash=request_hash,
                response_body=body,
                created_at=now,
                expires_at=expires_at,
            )
        )
    except IntegrityError as e:
        raise DuplicateKey(key, target_type) from e

    return IdempotencyRecord(
        key=key,
        target_type=target_type,
        target_id=target_id,
        status="completed",
        request_hash=request_hash,
        response_body=body,
        expires_at=expires_at,
    )
