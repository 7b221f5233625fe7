import logging
import os
from functools import lru_cache
from typing import List, Optional

import structlog
from pydantic import BaseModel


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: str = "skincare"
    payment_gateway: str = "stripe"
    stripe_secret_key: Optional[str] = None
    payment_signing_secret: Optional[str] = None
    default_currency: str = "INR"
    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            database_name=os.getenv("DATABASE_NAME", "skincare"),
            payment_gateway=os.getenv("PAYMENT_GATEWAY", "stripe").lower(),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            payment_signing_secret=os.getenv("PAYMENT_SIGNING_SECRET") or None,
            default_currency=os.getenv("DEFAULT_CURRENCY", "INR"),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", 8000)),
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for the API process."""
    numeric = logging.getLevelName(level)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        cache_logger_on_first_use=True,
    )
    # Suppress noisy library loggers
    logging.getLogger("pymongo").setLevel(logging.WARNING)
