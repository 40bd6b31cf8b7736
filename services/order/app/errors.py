"""
Order Service — 例外定義

業務エラーはすべて OrderServiceError のサブクラスとして表現し、
HTTP ステータスを保持する。main.py の例外ハンドラが
{success: false, error: message} のエンベロープに変換する。
"""


class OrderServiceError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(OrderServiceError):
    status_code = 400


# ── Not Found ────────────────────────────────────


class NotFound(OrderServiceError):
    status_code = 404


class CustomerNotFound(NotFound):
    def __init__(self, customer_id: int, message: str = "Customer not found") -> None:
        super().__init__(message)
        self.customer_id = customer_id


class CustomerServiceUnavailable(CustomerNotFound):
    """
    顧客サービスに到達できなかった。

    呼び出し側からは「顧客が存在しない」と同じ扱い(404)になるが、
    ログとメッセージで区別できるようにサブクラスにしている。
    """

    def __init__(self, customer_id: int) -> None:
        super().__init__(customer_id, "Customer not found or service unavailable")


class OrderNotFound(NotFound):
    def __init__(self, order_id: int) -> None:
        super().__init__("Order not found")
        self.order_id = order_id


class ProductNotFound(NotFound):
    def __init__(self, product_id: int) -> None:
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


# ── Conflict ─────────────────────────────────────


class Conflict(OrderServiceError):
    status_code = 409


class DuplicateSku(Conflict):
    def __init__(self, sku: str) -> None:
        super().__init__(f"SKU {sku} already registered")


class IdempotencyKeyConflict(Conflict):
    pass


# ── 業務ルール違反 ───────────────────────────────


class InsufficientStock(OrderServiceError):
    status_code = 400

    def __init__(self, product_id: int, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidStateTransition(OrderServiceError):
    status_code = 409


class CannotConfirmCanceled(InvalidStateTransition):
    def __init__(self) -> None:
        super().__init__("Cannot confirm a canceled order")


class CancelWindowExpired(InvalidStateTransition):
    def __init__(self, window_minutes: int) -> None:
        super().__init__(
            f"Cannot cancel order confirmed more than {window_minutes} minutes ago"
        )
