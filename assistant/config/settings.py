from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AIA_", case_sensitive=False)

    env: str = "dev"
    log_level: str = "INFO"
    api_keys: str = Field(default="dev-key", description="Comma separated API keys")

    # Provider
    provider_name: str = "stub"
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com"
    default_model: str = "gpt-4o-mini"
    provider_timeout_s: float = 30.0
    provider_max_retries: int = 2
    provider_backoff_base_s: float = 0.25
    provider_backoff_max_s: float = 2.0

    # Chat
    chat_enabled: bool = True
    max_input_length: int = 2000
    history_limit: int = 20
    default_retention_days: int = 90

    # Quotas. Unset values fall back to the subscription tier defaults.
    daily_token_limit: int | None = None
    monthly_token_limit: int | None = None
    hourly_request_limit: int | None = None
    read_requests_per_hour: int = 120
    max_concurrent_requests: int = 3

    # Concurrency slots
    concurrency_backend: str = "memory"
    redis_url: str | None = None
    redis_prefix: str = "aia:slots"
    redis_slot_ttl_seconds: int = 300

    # Storage
    database_path: Path = Path("artifacts/assistant.db")

    # Audit
    audit_retention_days: int = 90

    # Sanitizer
    injection_patterns_path: Path | None = None
    injection_patterns_mode: str = "extend"

    metrics_enabled: bool = True

    @property
    def api_key_set(self) -> set[str]:
        return {item.strip() for item in self.api_keys.split(",") if item.strip()}

    @property
    def provider_name_normalized(self) -> str:
        return self.provider_name.strip().lower()

    @property
    def concurrency_backend_normalized(self) -> str:
        return self.concurrency_backend.strip().lower()

    @property
    def injection_patterns_mode_normalized(self) -> str:
        return self.injection_patterns_mode.strip().lower()


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
