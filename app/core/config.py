from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    app_name: str = "Agent Pipeline Orchestrator"
    environment: Literal["dev", "test", "prod"] = "dev"
    debug: bool = False

    database_url: str = "sqlite:///./app.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str = ""
    celery_result_backend: str = ""
    celery_task_always_eager: bool = False

    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    encryption_key: str = "aLxM0wHk0w0oVx3G9iYfn7lr5J2v3xH5cM8D6lQ1t2Q="

    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"])
    rate_limit_per_minute: int = 60
    auto_create_tables: bool = True

    google_client_id: str = ""
    google_client_secret: str = ""
    google_token_url: str = "https://oauth2.googleapis.com/token"
    token_refresh_margin_seconds: int = 5 * 60

    proofline_agent_webhook: str = ""
    summary_agent_webhook: str = ""
    referral_engine_agent_webhook: str = ""
    opportunity_agent_webhook: str = ""
    cro_optimizer_agent_webhook: str = ""
    pms_parser_agent_webhook: str = ""
    ranking_analysis_agent_webhook: str = ""

    daily_agent_timeout_seconds: float = 300.0
    monthly_agent_timeout_seconds: float = 600.0
    ranking_agent_timeout_seconds: float = 300.0
    metrics_timeout_seconds: float = 60.0

    agent_call_max_attempts: int = 3
    agent_call_retry_delay_seconds: float = 30.0
    client_max_attempts: int = 3
    client_retry_delay_seconds: float = 30.0
    inter_stage_delay_seconds: float = 15.0
    inter_account_delay_seconds: float = 15.0

    ranking_max_retries: int = 3
    ranking_retry_delay_ms: int = 5000

    monthly_data_available: bool = True
    fleet_stop_on_error: bool = False
    fleet_schedule_hour: int = 6
    fleet_schedule_minute: int = 0

    log_level: str = "INFO"

    def get_celery_broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url

    def get_celery_result_backend(self) -> str:
        return self.celery_result_backend or self.redis_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
