"""Central environment-driven settings for the checkout service.

The process loads this once at startup. Collaborator credentials are optional
here: a missing key only fails the requests that need it (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class StorefrontSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "checkout"
    log_level: str = "INFO"
    database_url: str
    redis_url: str = "redis://redis:6379/0"
    kafka_bootstrap_servers: str = "kafka:9092"
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    tracing_enabled: bool = True
    admin_api_key: str | None = None
    rate_limit_per_minute: int = 30
    idempotency_ttl_seconds: int = 86400

    stripe_secret_key: str | None = None
    stripe_api_base: str = "https://api.stripe.com"
    shippo_api_key: str | None = None
    shippo_api_base: str = "https://api.goshippo.com"
    shippo_mode: str = "test"
    shippo_label_file_type: str = "PDF_4x6"
    sanity_project_id: str | None = None
    sanity_dataset: str = "production"
    sanity_api_version: str = "2025-01-01"
    sanity_read_token: str | None = None
    sanity_write_token: str | None = None

    http_timeout_seconds: float = 15.0
    payment_verify_attempts: int = 3
    persist_attempts: int = 3
    retry_base_delay_seconds: float = 0.5

    outbox_publisher_enabled: bool = True
    persistence_retry_enabled: bool = True
    persistence_retry_interval_seconds: float = 30.0
    persistence_retry_max_attempts: int = 10
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = StorefrontSettings()
