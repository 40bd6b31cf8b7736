"""
Order Service — 設定

環境変数から読み込んだ設定を不変(frozen)なオブジェクトとしてまとめ、
create_app やクライアントのコンストラクタへ明示的に渡す。
モジュールレベルのグローバル変数には依存しない。
"""

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping

DEFAULT_CANCEL_WINDOW = timedelta(minutes=10)
DEFAULT_IDEMPOTENCY_TTL = timedelta(hours=24)


@dataclass(frozen=True)
class Settings:
    database_url: str
    service_token: str
    customers_api_base: str = "http://localhost:3001"
    redis_url: str | None = None
    customer_lookup_timeout: float = 5.0
    cancel_window: timedelta = DEFAULT_CANCEL_WINDOW
    idempotency_ttl: timedelta = DEFAULT_IDEMPOTENCY_TTL
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "Settings":
        return cls(
            database_url=environ["DATABASE_URL"],
            service_token=environ["SERVICE_TOKEN"],
            customers_api_base=environ.get(
                "CUSTOMERS_API_BASE", "http://localhost:3001"
            ),
            redis_url=environ.get("REDIS_URL") or None,
            customer_lookup_timeout=float(
                environ.get("CUSTOMER_LOOKUP_TIMEOUT", "5.0")
            ),
            cancel_window=timedelta(
                minutes=int(environ.get("CANCEL_WINDOW_MINUTES", "10"))
            ),
            idempotency_ttl=timedelta(
                hours=int(environ.get("IDEMPOTENCY_TTL_HOURS", "24"))
            ),
            log_level=environ.get("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
