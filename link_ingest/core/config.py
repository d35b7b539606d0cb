from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "link-ingest"
    environment: str = "dev"
    log_level: str = "INFO"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    job_max_attempts: int = 3
    job_retry_base_seconds: float = 5.0
    job_retry_max_seconds: float = 300.0
    job_retry_jitter_seconds: float = 1.0
    rate_limit_retry_base_seconds: float = 30.0
    rate_limit_retry_max_seconds: float = 900.0
    rate_limit_retry_jitter_seconds: float = 5.0
    claim_batch_size: int = 5
    claim_candidate_multiplier: int = 3
    stuck_processing_after_seconds: float = 1200.0
    dedup_window_seconds: float = 86400.0

    fetch_timeout_seconds: float = 10.0
    fetch_max_retries: int = 2
    fetch_retry_delay_seconds: float = 1.0
    fetch_max_bytes: int = 2_000_000
    fetch_user_agent: str = "link-ingest/1.0"

    default_max_concurrent_jobs: int = 2
    default_max_jobs_per_minute: int = 30

    confidence_suggest_threshold: float = 0.30
    confidence_activate_threshold: float = 0.70
    resurface_rejected_links: bool = False

    enable_follow_up_jobs: bool = True
    max_follow_up_depth: int = 3

    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0

    otel_enabled: bool = True
    otel_service_name: str = "link-ingest"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LI_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
