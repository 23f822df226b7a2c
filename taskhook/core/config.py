from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()

NON_PRODUCTION_ENVIRONMENTS = ("local", "testing")


class Settings(BaseSettings):
    PROJECT_NAME: str = "Taskhook"
    API_V1_STR: str = "/api/v1"
    APP_ENV: str = "production"  # "production", "staging", "local", "testing"
    SECRET_KEY: str = ""  # Must be set via environment variable
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    DATABASE_URL: str = "sqlite:///./taskhook.db"

    # Shared state for breaker counters, idempotency keys and the id counter
    STATE_BACKEND: str = "database"  # "database" or "memory"

    # Outbound webhook (task API -> notification service)
    WEBHOOK_SECRET: str = ""
    WEBHOOK_URL: str = "http://localhost:3001/notify"
    WEBHOOK_SOURCE: str = "task-management-api"
    WEBHOOK_TIMEOUT_SECONDS: float = 30.0
    WEBHOOK_CONNECT_RETRIES: int = 1
    WEBHOOK_CONNECT_RETRY_DELAY_MS: int = 500
    WEBHOOK_MAX_ATTEMPTS: int = 5
    WEBHOOK_BACKOFF_SECONDS: List[int] = [10, 30, 60, 300, 900]  # 10s, 30s, 1m, 5m, 15m

    # Circuit breaker guarding the webhook call
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_SUCCESS_THRESHOLD: int = 2
    CIRCUIT_TIMEOUT_SECONDS: float = 60.0
    CIRCUIT_STATE_TTL_SECONDS: int = 3600

    # Notification service
    IDEMPOTENCY_TTL_SECONDS: int = 600  # 10 minutes
    NOTIFICATION_TTL_SECONDS: int = 30 * 24 * 60 * 60  # 30 days

    # Delivery worker
    RUN_DELIVERY_WORKER: bool = True
    DELIVERY_POLL_INTERVAL_SECONDS: int = 5
    DELIVERY_BATCH_SIZE: int = 20
    DELIVERY_STALE_MINUTES: int = 10

    # Users allowed to inspect and reset circuit breakers
    ADMIN_USER_IDS: List[int] = []

    SENTRY_DSN: str = ""

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.APP_ENV not in NON_PRODUCTION_ENVIRONMENTS


settings = Settings()
