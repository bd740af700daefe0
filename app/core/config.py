from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "Studio Rental Payments API"
    # Comma-separated origins for CORS. If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""
    LOG_LEVEL: str = "INFO"

    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v
    REDIS_URL: str = "redis://localhost:6379/0"

    FRONTEND_URL: str = "http://localhost:3000"  # return/cancel redirects after checkout

    # PayOS
    PAYOS_CLIENT_ID: str = ""
    PAYOS_API_KEY: str = ""
    PAYOS_CHECKSUM_KEY: str = ""
    PAYOS_BASE_URL: str = "https://api-merchant.payos.vn"
    PAYOS_TIMEOUT: int = 25
    PAYMENT_USE_MOCK: bool = False  # If True, never call PayOS (local dev / staging without credentials)

    PAYMENT_MIN_AMOUNT: int = 1000  # VND
    PAYMENT_LINK_EXPIRE_MINUTES: int = 15
    WEBHOOK_IDEMPOTENCY_TTL_SECONDS: int = 30
    LOCK_TTL_SECONDS: int = 30
    REFUND_RESUME_AFTER_MINUTES: int = 10
    REFUND_STALE_PROCESSING_MINUTES: int = 15

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() in ("prod", "production")

    @property
    def payos_configured(self) -> bool:
        return bool(self.PAYOS_CLIENT_ID and self.PAYOS_API_KEY and self.PAYOS_CHECKSUM_KEY)


settings = Settings()
