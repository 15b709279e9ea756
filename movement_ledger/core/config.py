from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Optional

class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Movement Ledger"
    APP_VERSION: str = "1.0.0"
    APP_PORT: int = 8081
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL_OVERRIDE: Optional[str] = None
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "movimientos_db"
    POSTGRES_PORT: int = 5432
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 15
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_STATEMENT_TIMEOUT_MS: int = 30000

    # RabbitMQ
    RABBIT_HOST: str = "localhost"
    RABBIT_PORT: int = 5672
    RABBIT_USER: str = "guest"
    RABBIT_PASSWORD: str = "guest"
    RABBIT_VHOST: str = "/"
    RABBIT_USE_TLS: bool = False
    RABBIT_EXCHANGE: str = "events.topic"
    RABBIT_QUEUE: str = "movement.generated"
    RABBIT_ROUTING_KEYS: List[str] = ["movement.generated"]
    RABBIT_PREFETCH_COUNT: int = 5
    NOTIFICATION_ROUTING_KEY: str = "notification.movement"
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0
    CONSUMER_ENABLED: bool = True

    # Stock API (stock-of-record)
    STOCK_API_URL: str = "http://localhost:8001"
    STOCK_API_KEY: str = ""
    STOCK_API_TIMEOUT_SECONDS: float = 15.0

    # Ledger
    ENCRYPTION_KEY: str = ""  # base64, 32 bytes
    LOW_STOCK_THRESHOLD: int = 10

    @property
    def DATABASE_URL(self) -> str:
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        return f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    @property
    def RABBIT_URL(self) -> str:
        scheme = "amqps" if self.RABBIT_USE_TLS else "amqp"
        vhost = self.RABBIT_VHOST.lstrip("/")
        return f"{scheme}://{self.RABBIT_USER}:{self.RABBIT_PASSWORD}@{self.RABBIT_HOST}:{self.RABBIT_PORT}/{vhost}"

    class Config:
        env_file = ".env"
        extra = "ignore"

@lru_cache()
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
