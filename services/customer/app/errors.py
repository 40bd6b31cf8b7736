"""
Customer Service — 例外定義
"""


class CustomerServiceError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class CustomerNotFound(CustomerServiceError):
    status_code = 404

    def __init__(self, customer_id: int) -> None:
        super().__init__("Customer not found")
        self.customer_id = customer_id


class DuplicateEmail(CustomerServiceError):
    """メールアドレスが別の顧客に登録済み"""
    status_code = 409

    def __init__(self, email: str) -> None:
        super().__init__("Email already registered")
        self.email = email


class Unauthorized(CustomerServiceError):
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Unauthorized")
