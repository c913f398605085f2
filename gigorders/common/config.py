"""Central environment-driven settings shared by the order and notification services.

Each service process loads this once at startup. Behavior is controlled by
environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "orders"
    log_level: str = "INFO"
    postgres_dsn: str
    redis_url: str = "redis://redis:6379/0"
    api_key: str
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True

    default_currency: str = "USD"
    default_lead_time_days: int = 7
    extension_days: int = 7
    order_number_attempts: int = 5
    transition_attempts: int = 2

    delivery_queue_name: str = "notifications:deferred"
    delivery_enqueue_timeout_seconds: float = 0.5
    delivery_webhook_url: str | None = None
    delivery_max_retries: int = 5
    delivery_backoff_seconds: int = 30
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
