"""Central environment-driven settings for the reconciliation service.

The process loads this once at startup. Behavior is controlled by environment
variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "reconciliation"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    gateway_base_url: str = "https://api.razorpay.com/v1"
    gateway_key_id: str = ""
    gateway_key_secret: str = ""
    gateway_webhook_secret: str = ""
    gateway_timeout_seconds: float = 10.0
    default_currency: str = "INR"
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    outbox_enabled: bool = True
    rate_limit_per_minute: int = 30
    obligation_update_retries: int = 3
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
