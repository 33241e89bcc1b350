"""Application configuration via environment variables."""

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./payments.db"
    log_level: str = "INFO"

    # Single minor-unit currency (yen has no subunit)
    payment_currency: str = "jpy"
    payment_min_amount: int = 100
    payment_max_amount: int = 9_999_999

    stripe_secret_key: Optional[str] = None
    stripe_publishable_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    gateway_timeout_seconds: float = 20.0

    # Demo/offline mode: manual provider fabricates status for unknown ids
    manual_status_synthesis: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
