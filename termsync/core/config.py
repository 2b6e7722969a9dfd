from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "termsync-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    api_keys_json: str | None = None
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    sync_pairs_json: str | None = None
    batch_chunk_size: int = 100
    batch_ttl_seconds: int = 3600
    progress_store_capacity: int = 256
    otel_enabled: bool = True
    otel_service_name: str = "termsync-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True
    otel_excluded_urls: str = "healthz"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="TERMSYNC_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
