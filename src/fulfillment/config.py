import os

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DATABASE_URL: str          = os.getenv("DATABASE_URL", "")
    DB_USER: str               = os.getenv("DB_USER", "")
    DB_PASSWORD: str           = os.getenv("DB_PASSWORD", "")
    DB_NAME: str               = os.getenv("DB_NAME", "")
    DB_HOST: str               = os.getenv("DB_HOST", "")
    DB_PORT: int               = int(os.getenv("DB_PORT", "5432"))
    DB_ECHO: bool              = False

    RABBIT_USER: str           = os.getenv("RABBIT_USER", "")
    RABBIT_PASSWORD: str       = os.getenv("RABBIT_PASSWORD", "")
    RABBIT_HOST: str           = os.getenv("RABBIT_HOST", "")
    RABBIT_PORT: int           = int(os.getenv("RABBIT_PORT", "5672"))

    OUTBOX_POLL_INTERVAL: int  = int(os.getenv("OUTBOX_POLL_INTERVAL", "1"))
    NOTIFY_PREFETCH_COUNT: int = int(os.getenv("NOTIFY_PREFETCH_COUNT", "10"))

    PAYMENT_GATEWAY: str       = os.getenv("PAYMENT_GATEWAY", "stripe")
    PAYMENT_CURRENCY: str      = os.getenv("PAYMENT_CURRENCY", "usd")
    STRIPE_SECRET_KEY: str     = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")

    LOW_STOCK_THRESHOLD: int         = 3
    SHIPPING_ADDRESS_MAX_LENGTH: int = 100

    LOG_LEVEL: str             = os.getenv("LOG_LEVEL", "INFO")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://"
            f"{self.DB_USER}:"
            f"{self.DB_PASSWORD}"
            f"@{self.DB_HOST}:"
            f"{self.DB_PORT}/"
            f"{self.DB_NAME}"
        )

    @property
    def rabbit_url(self) -> str:
        return f"amqp://{self.RABBIT_USER}:{self.RABBIT_PASSWORD}@{self.RABBIT_HOST}:{self.RABBIT_PORT}/"

settings = Settings()

