"""
Saga Service — 設定
"""

import logging
import os
from dataclasses import dataclass
from typing import Mapping


@dataclass(frozen=True)
class Settings:
    service_token: str
    customers_api_base: str = "http://localhost:3001"
    orders_api_base: str = "http://localhost:3002"
    redis_url: str | None = None
    request_timeout: float = 10.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "Settings":
        return cls(
            service_token=environ["SERVICE_TOKEN"],
            customers_api_base=environ.get("CUSTOMERS_API_BASE", "http://localhost:3001"),
            orders_api_base=environ.get("ORDERS_API_BASE", "http://localhost:3002"),
            redis_url=environ.get("REDIS_URL") or None,
            request_timeout=float(environ.get("REQUEST_TIMEOUT", "10.0")),
            log_level=environ.get("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
