"""Application configuration via Pydantic Settings."""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve .env from backend/ regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./grannhjalp.db"

    # Identity provider (tokens are issued elsewhere, only validated here)
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_timeout_seconds: float = 10.0
    stripe_max_network_retries: int = 0
    stripe_connect_country: str = "SE"

    # Settlement
    commission_rate: Decimal = Decimal("0.10")
    default_currency: str = "SEK"
    transfer_max_attempts: int = 5
    transfer_retry_interval_minutes: int = 15
    transfer_stale_after_minutes: int = 30
    webhook_max_body_bytes: int = 256 * 1024

    # CORS / Frontend
    cors_origins: str = "http://localhost:5173"
    frontend_url: str = "http://localhost:5173"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin (LAN IPs, etc.).
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
