from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "selfstudy-ingest-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    identity_url: str | None = None
    identity_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    max_upload_bytes: int = 50 * 1024 * 1024
    default_taxonomy_name: str = "CSHSE Standards"
    local_acceptance_threshold: float = 0.6
    callback_base_url: str | None = None
    callback_path: str = "/webhooks/document-matcher/callback"
    callback_secret: str | None = None
    classifier_enabled: bool = False
    classifier_url: str | None = None
    classifier_auth_type: str = "none"
    classifier_api_key: str | None = None
    classifier_bearer_token: str | None = None
    classifier_headers_json: str | None = None
    classifier_timeout_seconds: float = 30.0
    classifier_chunk_delay_seconds: float = 0.5
    classifier_confidence_threshold: int = 50
    otel_enabled: bool = True
    otel_service_name: str = "selfstudy-ingest-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SSI_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
