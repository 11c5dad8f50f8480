from __future__ import annotations

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "billsync"
    app_version: str = "0.1.0"
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    db_pool_min_size: int = 1
    db_pool_max_size: int = 5

    # PayPal
    paypal_client_id: str | None = None
    paypal_client_secret: str | None = None
    paypal_base_url: str = "https://api.paypal.com"
    provider_timeout_seconds: float = 20.0

    # Subscription policy
    pro_plan_marker: str = "PRO"
    max_failed_payments: int = 3
    retry_schedule_days: list[int] = [1, 3, 5]
    sync_interval_seconds: int = 300
    recent_transactions_limit: int = 5

    # Security
    cors_origins: list[str] = []

    # Sentry
    sentry_dsn: str | None = None

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Metrics
    metrics_backend: str = "stdout"
    metrics_namespace: str = "billsync"
    metrics_disable: bool = False
    metrics_sample_rate: float = 1.0
    metrics_statsd_host: str = "127.0.0.1"
    metrics_statsd_port: int = 8125
    metrics_schema_version: str = "billsync.v1"

    def missing_sync_settings(self) -> list[str]:
        """Return the env names required by the sync entry point that are unset."""
        required = {
            "PAYPAL_CLIENT_ID": self.paypal_client_id,
            "PAYPAL_CLIENT_SECRET": self.paypal_client_secret,
            "DATABASE_URL": self.database_url,
        }
        return [name for name, value in required.items() if not value]

    model_config = ConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
