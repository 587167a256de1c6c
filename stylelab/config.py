"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (locks + worker heartbeats)
    redis_url: str = "redis://localhost:6379/0"

    # Anthropic (primary message generator)
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-haiku-4-5-20251001"
    anthropic_max_tokens: int = 1200
    anthropic_timeout_seconds: int = 30

    # OpenAI (fallback message generator)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    # SendGrid
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = "campaigns@stylelab.io"
    sendgrid_from_name: str = "StyleLab"
    sendgrid_transactional_key: str = ""  # Separate key for owner notifications
    from_email_transactional: str = "noreply@stylelab.io"

    # Sentry
    sentry_dsn: str = ""

    # Round scheduler
    round_scheduler_enabled: bool = True
    round_scan_interval_seconds: int = 60
    round_scan_concurrency: int = 4
    # IN_PROGRESS or ANALYZING rounds untouched this long are failed by the sweep
    stale_round_timeout_minutes: int = 60

    # Round defaults
    default_wait_time_for_metrics_minutes: int = 60
    send_batch_size: int = 10
    send_batch_delay_seconds: float = 1.0

    # Bandit priors (alpha=1, beta=19 -> 5% prior conversion rate)
    bandit_prior_alpha: float = 1.0
    bandit_prior_beta: float = 19.0

    # Validation minimums
    min_total_subscribers: int = 10
    min_subscribers_per_round: int = 5
    min_subscribers_per_segment: int = 5

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
