import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/liveops"
    # "auto" (unverified TLS for Railway proxies only), "require", "insecure" or "disable"
    database_ssl: str = "auto"
    database_connect_timeout: float = 30.0

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Managed Postgres hands out postgresql://, asyncpg needs postgresql+asyncpg://."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values
    secret_key: str = "change-me-in-production"
    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Meta Marketing API
    meta_access_token: str = ""
    meta_ad_account_id: str = ""

    # TikTok Business API
    tiktok_access_token: str = ""
    tiktok_advertiser_id: str = ""

    # NewsBreak Business API
    newsbreak_api_key: str = ""
    newsbreak_account_id: str = ""

    # Google Ads REST API
    google_developer_token: str = ""
    google_customer_id: str = ""
    google_login_customer_id: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    google_refresh_token: str = ""
    google_access_token: str = ""

    # Webhook HMAC secrets (empty = unsigned webhooks accepted outside production)
    meta_webhook_secret: str = ""
    tiktok_webhook_secret: str = ""
    newsbreak_webhook_secret: str = ""
    google_webhook_secret: str = ""

    # Live campaign engine
    min_budget_cents: int = 500
    sync_debounce_seconds: float = 3.0
    sync_min_interval_seconds: float = 10.0
    sync_platform_concurrency: int = 4

    # Platform HTTP transport
    http_timeout_seconds: float = 30.0
    http_max_retries: int = 3
    http_backoff_seconds: float = 0.5

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if self.secret_key == "change-me-in-production":
                raise ValueError(
                    "SECRET_KEY must be set to a secure value in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["http://localhost:5173", "http://localhost:3000"]

    def webhook_secret_for(self, platform: str) -> str:
        return getattr(self, f"{platform.lower()}_webhook_secret", "") or ""


@lru_cache
def get_settings() -> Settings:
    return Settings()
