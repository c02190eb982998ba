"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Gateway, worker and DLQ
processes read the same keys so retry topology and policy defaults agree
across the pipeline (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    admin_api_key: str
    auth_service_url: str = "http://auth:8080"
    audit_service_url: str | None = None
    tenant_api_keys: str | None = None
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    rate_limit_per_minute: int = 60
    rate_limit_window_seconds: int = 60
    max_attempts: int = 3
    retry_tier_delays: str = "0,1,5,30"
    stop_on_first_success: bool = True
    default_fallback_order: str = "EMAIL,SMS,PUSH,WEBHOOK"
    provider_timeout_seconds: float = 5.0
    collaborator_timeout_seconds: float = 2.0
    outbox_batch_size: int = 100
    outbox_poll_interval_seconds: float = 1.0
    outbox_relay_grace_seconds: int = 5
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def tier_delays(self) -> list[int]:
        return [int(value) for value in _split_csv(self.retry_tier_delays)]

    @property
    def fallback_order(self) -> list[str]:
        return [value.upper() for value in _split_csv(self.default_fallback_order)]

    @property
    def static_api_keys(self) -> dict[str, str]:
        """Parse `key=tenant,key2=tenant2` into a credential map."""

        if not self.tenant_api_keys:
            return {}
        pairs = {}
        for item in _split_csv(self.tenant_api_keys):
            key, _, tenant_id = item.partition("=")
            if key and tenant_id:
                pairs[key.strip()] = tenant_id.strip()
        return pairs


settings = CommonSettings()
