from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Webhook Payment Listener"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # "development", "staging", "production"

    # Database (SQLite file for local dev, PostgreSQL in production)
    DATABASE_URL: str = "sqlite:///./webhook_events.db"
    AUTO_CREATE_TABLES: bool = True
    STORE_TIMEOUT_SECONDS: int = 10  # statement/lock timeout for admission queries

    # Shared HMAC secret, must be set via environment variable
    WEBHOOK_SECRET: str = ""

    # Sliding window rate limiting per client address (100 requests per 15 minutes)
    RATE_LIMIT_MAX_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 900
    RATE_LIMIT_SWEEP_INTERVAL_SECONDS: int = 60

    # Sync endpoints run on the AnyIO thread pool
    THREADPOOL_MAX_WORKERS: int = 40

    # Comma-separated list, "*" allows any origin
    ALLOWED_ORIGINS: str = "*"
    # Proxies whose X-Forwarded-For header is trusted for the client address
    FORWARDED_ALLOW_IPS: str = "127.0.0.1"

    # Error tracking
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    # Force JSON logs outside production
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def forwarded_allow_ips(self) -> list[str]:
        return [ip.strip() for ip in self.FORWARDED_ALLOW_IPS.split(",") if ip.strip()]


settings = Settings()
