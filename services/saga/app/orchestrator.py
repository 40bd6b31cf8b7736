"""
Saga Orchestrator — 注文作成 Saga

Saga パターン（オーケストレーション型）:
  中央のオーケストレーターが各サービスへの呼び出し順序を制御する。
  サービス間に共有トランザクションはない。各ステップは同期的に実行され、
  最初に失敗したステップで中断して結果を報告する。

  フロー:
  ┌─────────────────────────────────────────────────────────┐
  │  1. Customer Service で顧客を確認                         │
  │     └─ 見つからない / 到達不能 → 中断 (注文は未作成)       │
  │  2. Order Service に注文作成を依頼 (在庫引き当て込み)      │
  │     └─ 失敗 → 中断 (注文作成はアトミックなので残骸なし)    │
  │  3. Order Service に注文確定を依頼                        │
  │     └─ 失敗 → 注文は CREATED のまま残る                   │
  └─────────────────────────────────────────────────────────┘

  ステップ 3 の失敗に補償トランザクションはない。呼び出し側は同じ
  冪等性キーで Saga 全体をリトライする。作成・確定の両方がキーで
  冪等になっているため、リトライは同じ注文を再利用する。
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import Settings

logger = logging.getLogger(__name__)

SAGA_EVENTS_CHANNEL = "saga_events"


class StepFailed(Exception):
    def __init__(self, status_code: int, error: str) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error


@dataclass
class SagaOutcome:
    success: bool
    status_code: int
    correlation_id: str | None = None
    data: dict | None = None
    error: str | None = None
    saga_log: list[dict] = field(default_factory=list)

    def body(self) -> dict:
        body = {"success": self.success, "correlationId": self.correlation_id}
        if self.success:
            body["data"] = self.data
        else:
            body["error"] = self.error
        body["saga_log"] = self.saga_log
        return body


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        settings: Settings,
        redis: aioredis.Redis | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.customers_url = settings.customers_api_base.rstrip("/")
        self.order_url = settings.orders_api_base.rstrip("/")
        self.redis = redis
        self.transport = transport

    async def execute(
        self,
        customer_id: int,
        items: list[dict],
        idempotency_key: str,
        correlation_id: str | None = None,
    ) -> SagaOutcome:
        """
        Saga を実行する。

        各呼び出しにはタイムアウトを設定し、タイムアウトは
        接続拒否と同じ「到達不能」として扱う。
        """
        saga_log: list[dict] = []
        logger.info(
            "Saga started for customer %s (correlation_id=%s)",
            customer_id, correlation_id or "N/A",
        )

        async with httpx.AsyncClient(
            timeout=self.settings.request_timeout, transport=self.transport
        ) as client:
            try:
                # ── Step 1: 顧客を確認 ─────────────────────
                customer = await self._step(
                    saga_log, 1, "ValidateCustomer",
                    self._get_customer(client, customer_id),
                )

                # ── Step 2: 注文を作成 ─────────────────────
                order = await self._step(
                    saga_log, 2, "CreateOrder",
                    self._call_orders(
                        client,
                        "/orders",
                        {"customer_id": customer_id, "items": items},
                        idempotency_key,
                        "Failed to create order",
                    ),
                )
                saga_log[-1]["order_id"] = order["id"]

                # ── Step 3: 注文を確定 ─────────────────────
                order = await self._step(
                    saga_log, 3, "ConfirmOrder",
                    self._call_orders(
                        client,
                        f"/orders/{order['id']}/confirm",
                        None,
                        idempotency_key,
                        "Failed to confirm order",
                    ),
                    order_id=order["id"],
                )
            except StepFailed as e:
                logger.warning("Saga failed at step %d: %s", len(saga_log), e.error)
                await self._publish_saga_event("SagaFailed", correlation_id, saga_log)
                return SagaOutcome(
                    success=False,
                    status_code=e.status_code,
                    correlation_id=correlation_id,
                    error=e.error,
                    saga_log=saga_log,
                )

        data = {
            "customer": {
                "id": customer["id"],
                "name": customer["name"],
                "email": customer["email"],
                "phone": customer.get("phone"),
            },
            "order": {
                "id": order["id"],
                "status": order["status"],
                "total_cents": order["total_cents"],
                "items": [
                    {
                        "product_id": item["product_id"],
                        "product_name": item.get("product_name"),
                        "sku": item.get("sku"),
                        "qty": item["qty"],
                        "unit_price_cents": item["unit_price_cents"],
                        "subtotal_cents": item["subtotal_cents"],
                    }
                    for item in order["items"]
                ],
            },
        }
        logger.info("Saga completed: order %s confirmed", order["id"])
        await self._publish_saga_event("SagaCompleted", correlation_id, saga_log)
        return SagaOutcome(
            success=True,
            status_code=201,
            correlation_id=correlation_id,
            data=data,
            saga_log=saga_log,
        )

    async def _step(
        self,
        saga_log: list[dict],
        step: int,
        action: str,
        call: Awaitable[dict],
        **details,
    ) -> dict:
        """1 ステップを実行し、saga_log に状態を記録する。"""
        entry = {
            "step": step,
            "action": action,
            **details,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        saga_log.append(entry)
        try:
            result = await call
        except StepFailed as e:
            entry["status"] = "FAILED"
            entry["error"] = e.error
            raise
        entry["status"] = "COMPLETED"
        return result

    async def _get_customer(self, client: httpx.AsyncClient, customer_id: int) -> dict:
        # 「存在しない」と「確認できない」はどちらも 404 として扱う
        try:
            resp = await client.get(
                f"{self.customers_url}/internal/customers/{customer_id}",
                headers={"Authorization": f"Bearer {self.settings.service_token}"},
            )
        except httpx.HTTPError as e:
            logger.warning("Customer lookup failed: %s", e)
            raise StepFailed(404, "Customer not found or service unavailable") from e

        if resp.status_code == 404:
            raise StepFailed(404, "Customer not found")
        if resp.is_error:
            logger.warning("Customer lookup returned HTTP %s", resp.status_code)
            raise StepFailed(404, "Customer not found or service unavailable")

        body = _json_body(resp)
        if body is None:
            logger.warning("Customer lookup returned a non-JSON body")
            raise StepFailed(404, "Customer not found or service unavailable")
        if not body.get("success"):
            raise StepFailed(404, "Customer not found")
        if not isinstance(body.get("data"), dict):
            logger.warning("Customer lookup returned no data")
            raise StepFailed(404, "Customer not found or service unavailable")
        return body["data"]

    async def _call_orders(
        self,
        client: httpx.AsyncClient,
        path: str,
        payload: dict | None,
        idempotency_key: str,
        fallback_error: str,
    ) -> dict:
        """
        Order Service を呼び出す。

        4xx はそのステータスとエラーメッセージをそのまま返し、
        5xx・タイムアウト・接続失敗は 502 とする。
        """
        try:
            resp = await client.post(
                f"{self.order_url}{path}",
                json=payload,
                headers={"X-Idempotency-Key": idempotency_key},
            )
        except httpx.HTTPError as e:
            logger.warning("Order service call %s failed: %s", path, e)
            raise StepFailed(502, f"{fallback_error}: order service unavailable") from e

        body = _json_body(resp)
        if resp.is_error or not body or not body.get("success"):
            status = resp.status_code if 400 <= resp.status_code < 500 else 502
            error = (body or {}).get("error") or fallback_error
            raise StepFailed(status, error)
        if not isinstance(body.get("data"), dict):
            logger.warning("Order service call %s returned no data", path)
            raise StepFailed(502, fallback_error)
        return body["data"]

    async def _publish_saga_event(
        self,
        event_type: str,
        correlation_id: str | None,
        saga_log: list[dict],
    ) -> None:
        """Saga のイベントを Redis に発行する。"""
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                SAGA_EVENTS_CHANNEL,
                json.dumps(
                    {
                        "event_type": event_type,
                        "correlation_id": correlation_id,
                        "saga_log": saga_log,
                    },
                    default=str,
                ),
            )
        except RedisError:
            logger.exception("Failed to publish %s", event_type)


def _json_body(resp: httpx.Response) -> dict | None:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None
