"""
Order Service — 顧客バリデータ (Customer Validator)

顧客サービスの内部 API (GET /internal/customers/{id}) を呼び出し、
顧客の存在を確認する。共有シークレットを Bearer トークンとして送る。

到達できない場合(タイムアウト・接続拒否・5xx・解釈できない応答)も
「顧客なし」として扱う。
区別が必要な呼び出し側のために CustomerServiceUnavailable を投げる。
"""

import logging

import httpx

from .errors import CustomerNotFound, CustomerServiceUnavailable

logger = logging.getLogger(__name__)


class CustomerDirectory:
    def __init__(
        self,
        base_url: str,
        service_token: str,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_token = service_token
        self.timeout = timeout
        self.transport = transport

    async def get_customer(self, customer_id: int) -> dict:
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as client:
            try:
                resp = await client.get(
                    f"{self.base_url}/internal/customers/{customer_id}",
                    headers={"Authorization": f"Bearer {self.service_token}"},
                )
            except httpx.HTTPError as e:
                logger.warning("Customer lookup for %s failed: %s", customer_id, e)
                raise CustomerServiceUnavailable(customer_id) from e

        if resp.status_code == 404:
            raise CustomerNotFound(customer_id)
        if resp.is_error:
            logger.warning(
                "Customer lookup for %s returned HTTP %s", customer_id, resp.status_code
            )
            raise CustomerServiceUnavailable(customer_id)

        try:
            body = resp.json()
        except ValueError as e:
            logger.warning("Customer lookup for %s returned a non-JSON body", customer_id)
            raise CustomerServiceUnavailable(customer_id) from e
        if not isinstance(body, dict):
            raise CustomerServiceUnavailable(customer_id)
        if not body.get("success"):
            raise CustomerNotFound(customer_id)

        customer = body.get("data")
        if not isinstance(customer, dict):
            logger.warning("Customer lookup for %s returned no data", customer_id)
            raise CustomerServiceUnavailable(customer_id)
        return customer
