from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-change-in-production"
    JWT_SECRET: Optional[str] = None
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24
    DEBUG: bool = False

    @property
    def secret_key(self) -> str:
        return self.JWT_SECRET or self.SECRET_KEY

    # SQLite is fine for local runs and tests; production points this at Postgres.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./sales_ledger.db")
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # Marketplace API hosts. Overridable so sandboxes can be targeted.
    SWELL_API_BASE_URL: str = "https://api.swell.store"
    EBAY_API_BASE_URL: str = "https://api.ebay.com"
    ETSY_API_BASE_URL: str = "https://openapi.etsy.com/v3"
    AMAZON_API_BASE_URL: str = "https://sellingpartnerapi-na.amazon.com"

    # OAuth clients used for refresh_token grants.
    EBAY_CLIENT_ID: Optional[str] = None
    EBAY_CLIENT_SECRET: Optional[str] = None
    EBAY_TOKEN_URL: str = "https://api.ebay.com/identity/v1/oauth2/token"

    ETSY_CLIENT_ID: Optional[str] = None
    ETSY_TOKEN_URL: str = "https://api.etsy.com/v3/public/oauth/token"

    AMAZON_CLIENT_ID: Optional[str] = None
    AMAZON_CLIENT_SECRET: Optional[str] = None
    AMAZON_TOKEN_URL: str = "https://api.amazon.com/auth/o2/token"
    AMAZON_MARKETPLACE_ID: str = "ATVPDKIKX0DER"

    # Sync engine tuning.
    SYNC_MAX_PAGES: int = 200  # hard cap per platform per run
    SYNC_PAGE_TIMEOUT_SECONDS: float = 30.0
    SYNC_MAX_ATTEMPTS: int = 3
    SYNC_BACKOFF_BASE_SECONDS: float = 1.0
    SYNC_BACKOFF_MAX_SECONDS: float = 30.0
    SYNC_MAX_CONCURRENT_PLATFORMS: int = 4
    # Tokens expiring within this many minutes are refreshed before a sync.
    TOKEN_REFRESH_THRESHOLD_MINUTES: int = 5

    # Analytics.
    HIGH_VALUE_THRESHOLD: float = 30.0
    # "New customer" lookback for all-time reports, where there is no window start.
    NEW_CUSTOMER_LOOKBACK_DAYS: int = 30

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def allowed_origins(self) -> list:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]


settings = Settings()
