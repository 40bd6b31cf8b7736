"""HTTP tests for the order service."""

import httpx
import pytest
from fastapi.testclient import TestClient

from services.order.app.config import Settings
from services.order.app.customers import CustomerDirectory
from services.order.app.main import create_app


@pytest.fixture
def client(database_url, customers):
    settings = Settings(database_url=database_url, service_token="test-token")
    app = create_app(settings, customers=customers)
    with TestClient(app) as client:
        yield client


def _product(client, sku="SKU-1", price_cents=1000, stock=5):
    resp = client.post(
        "/products",
        json={"sku": sku, "name": f"Product {sku}", "price_cents": price_cents, "stock": stock},
    )
    assert resp.status_code == 201
    return resp.json()["data"]


def _order(client, items, customer_id=1, key=None):
    headers = {"X-Idempotency-Key": key} if key else {}
    return client.post(
        "/orders", json={"customer_id": customer_id, "items": items}, headers=headers
    )


class TestProducts:

    def test_create_and_get_product(self, client):
        product = _product(client, sku="ABC-1", price_cents=1500, stock=7)

        resp = client.get(f"/products/{product['id']}")

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["sku"] == "ABC-1"
        assert body["data"]["stock"] == 7

    def test_duplicate_sku_conflict(self, client):
        _product(client, sku="ABC-1")

        resp = client.post(
            "/products",
            json={"sku": "ABC-1", "name": "Other", "price_cents": 1, "stock": 1},
        )

        assert resp.status_code == 409
        assert resp.json() == {"success": False, "error": "SKU ABC-1 already registered"}

    def test_partial_update(self, client):
        product = _product(client, price_cents=1000, stock=5)

        resp = client.patch(f"/products/{product['id']}", json={"stock": 12})

        assert resp.status_code == 200
        assert resp.json()["data"]["stock"] == 12
        assert resp.json()["data"]["price_cents"] == 1000

    def test_update_requires_a_field(self, client):
        product = _product(client)

        resp = client.patch(f"/products/{product['id']}", json={})

        assert resp.status_code == 400
        assert resp.json()["success"] is False

    def test_update_missing_product(self, client):
        resp = client.patch("/products/999", json={"stock": 1})

        assert resp.status_code == 404
        assert resp.json()["error"] == "Product 999 not found"

    def test_negative_stock_rejected(self, client):
        resp = client.post(
            "/products",
            json={"sku": "X", "name": "Broken", "price_cents": 1, "stock": -1},
        )

        assert resp.status_code == 400

    def test_search_products(self, client):
        _product(client, sku="RED-1")
        _product(client, sku="BLUE-1")

        resp = client.get("/products", params={"search": "RED"})

        body = resp.json()
        assert [p["sku"] for p in body["data"]] == ["RED-1"]
        assert body["hasMore"] is False


class TestOrders:

    def test_create_order(self, client):
        product = _product(client, price_cents=1000, stock=5)

        resp = _order(client, [{"product_id": product["id"], "qty": 2}])

        assert resp.status_code == 201
        order = resp.json()["data"]
        assert order["status"] == "CREATED"
        assert order["total_cents"] == 2000
        assert order["items"][0]["sku"] == "SKU-1"
        assert client.get(f"/products/{product['id']}").json()["data"]["stock"] == 3

    def test_insufficient_stock_is_client_error(self, client):
        product = _product(client, stock=1)

        resp = _order(client, [{"product_id": product["id"], "qty": 2}])

        assert resp.status_code == 400
        assert "Insufficient stock" in resp.json()["error"]

    def test_unknown_customer(self, client):
        product = _product(client)

        resp = _order(client, [{"product_id": product["id"], "qty": 1}], customer_id=7)

        assert resp.status_code == 404
        assert resp.json() == {"success": False, "error": "Customer not found"}

    def test_invalid_body(self, client):
        resp = client.post("/orders", json={"customer_id": 1, "items": []})

        assert resp.status_code == 400
        assert resp.json()["success"] is False

    def test_get_missing_order(self, client):
        resp = client.get("/orders/999")

        assert resp.status_code == 404
        assert resp.json() == {"success": False, "error": "Order not found"}

    def test_create_with_key_is_idempotent(self, client):
        product = _product(client, stock=5)
        items = [{"product_id": product["id"], "qty": 2}]

        first = _order(client, items, key="saga-1")
        second = _order(client, items, key="saga-1")

        assert second.content == first.content
        assert client.get(f"/products/{product['id']}").json()["data"]["stock"] == 3

    def test_confirm_with_key_replays_identical_body(self, client):
        product = _product(client)
        order = _order(client, [{"product_id": product["id"], "qty": 1}]).json()["data"]

        first = client.post(
            f"/orders/{order['id']}/confirm", headers={"X-Idempotency-Key": "abc"}
        )
        second = client.post(
            f"/orders/{order['id']}/confirm", headers={"X-Idempotency-Key": "abc"}
        )

        assert first.status_code == 200
        assert first.json()["data"]["status"] == "CONFIRMED"
        assert second.content == first.content

    def test_confirm_key_for_other_order_conflicts(self, client):
        product = _product(client)
        a = _order(client, [{"product_id": product["id"], "qty": 1}]).json()["data"]
        b = _order(client, [{"product_id": product["id"], "qty": 1}]).json()["data"]
        client.post(f"/orders/{a['id']}/confirm", headers={"X-Idempotency-Key": "abc"})

        resp = client.post(f"/orders/{b['id']}/confirm", headers={"X-Idempotency-Key": "abc"})

        assert resp.status_code == 409

    def test_confirm_canceled_order(self, client):
        product = _product(client)
        order = _order(client, [{"product_id": product["id"], "qty": 1}]).json()["data"]
        client.post(f"/orders/{order['id']}/cancel")

        resp = client.post(f"/orders/{order['id']}/confirm")

        assert resp.status_code == 409
        assert resp.json()["error"] == "Cannot confirm a canceled order"

    def test_cancel_restores_stock(self, client):
        product = _product(client, stock=5)
        order = _order(client, [{"product_id": product["id"], "qty": 2}]).json()["data"]
        client.post(f"/orders/{order['id']}/confirm")

        resp = client.post(f"/orders/{order['id']}/cancel")

        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "CANCELED"
        assert client.get(f"/products/{product['id']}").json()["data"]["stock"] == 5

    def test_cancel_missing_order(self, client):
        resp = client.post("/orders/999/cancel")

        assert resp.status_code == 404


class TestSearchOrders:

    def test_pagination_and_status_filter(self, client):
        product = _product(client, stock=100)
        ids = [
            _order(client, [{"product_id": product["id"], "qty": 1}]).json()["data"]["id"]
            for _ in range(3)
        ]
        client.post(f"/orders/{ids[0]}/confirm")

        page = client.get("/orders", params={"limit": 2}).json()
        assert [o["id"] for o in page["data"]] == [ids[2], ids[1]]
        assert page["cursor"] == 2
        assert page["hasMore"] is True

        page = client.get("/orders", params={"limit": 2, "cursor": 2}).json()
        assert [o["id"] for o in page["data"]] == [ids[0]]
        assert page["hasMore"] is False

        confirmed = client.get("/orders", params={"status": "CONFIRMED"}).json()
        assert [o["id"] for o in confirmed["data"]] == [ids[0]]

    def test_date_range_filter(self, client):
        product = _product(client)
        _order(client, [{"product_id": product["id"], "qty": 1}])

        future = client.get("/orders", params={"from": "2999-01-01T00:00:00Z"}).json()
        past = client.get("/orders", params={"to": "2000-01-01T00:00:00Z"}).json()
        all_time = client.get(
            "/orders", params={"from": "2000-01-01T00:00:00Z", "to": "2999-01-01T00:00:00Z"}
        ).json()

        assert future["data"] == []
        assert past["data"] == []
        assert len(all_time["data"]) == 1

    def test_limit_capped_at_100(self, client):
        resp = client.get("/orders", params={"limit": 500})

        assert resp.status_code == 200
        assert resp.json()["hasMore"] is False

    def test_unknown_status_rejected(self, client):
        resp = client.get("/orders", params={"status": "SHIPPED"})

        assert resp.status_code == 400


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


def test_unusable_customer_reply_is_not_found(database_url):
    directory = CustomerDirectory(
        "http://customers",
        "test-token",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>")),
    )
    settings = Settings(database_url=database_url, service_token="test-token")

    with TestClient(create_app(settings, customers=directory)) as client:
        product = _product(client)
        resp = _order(client, [{"product_id": product["id"], "qty": 1}])
        stock = client.get(f"/products/{product['id']}").json()["data"]["stock"]

    assert resp.status_code == 404
    assert resp.json() == {
        "success": False,
        "error": "Customer not found or service unavailable",
    }
    assert stock == 5
