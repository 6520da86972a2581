from pathlib import Path
from typing import Optional
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_ENCRYPTION_KEY_LENGTH = 32


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=Path(__file__).resolve().parents[3] / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    project_name: str = "Model Compare"
    log_level: str = "INFO"

    # System-wide provider keys, used when a user has not supplied their own
    openai_api_key: Optional[SecretStr] = Field(default=None, description="OpenAI API key")
    anthropic_api_key: Optional[SecretStr] = Field(default=None, description="Anthropic API key")
    google_api_key: Optional[SecretStr] = Field(default=None, description="Google AI Studio API key")
    cohere_api_key: Optional[SecretStr] = Field(default=None, description="Cohere API key")

    # Required: stored user API keys are encrypted with it
    encryption_key: SecretStr = Field(
        description="Master secret used to encrypt stored user API keys (at least 32 characters)"
    )

    database_url: str = "sqlite:///./model_compare.db"

    redis_host: str = "localhost"
    redis_port: int = 6379
    result_cache_ttl_seconds: int = 300

    provider_timeout_ms: int = 30000

    orchestration_attempts: int = 2
    orchestration_backoff_ms: int = 5000
    orchestration_concurrency: int = 5
    scoring_attempts: int = 3
    scoring_backoff_ms: int = 2000
    scoring_concurrency: int = 10
    dead_letter_limit: int = 50

    event_queue_size: int = 100

    # When True, a query whose every provider call failed ends FAILED instead of COMPLETED
    fail_on_total_provider_failure: bool = False

    @field_validator("encryption_key")
    @classmethod
    def encryption_key_must_be_long(cls, value: SecretStr) -> SecretStr:
        if len(value.get_secret_value()) < MIN_ENCRYPTION_KEY_LENGTH:
            raise ValueError(
                f"ENCRYPTION_KEY must be at least {MIN_ENCRYPTION_KEY_LENGTH} characters"
            )
        return value

    @property
    def PROJECT_NAME(self) -> str:
        return self.project_name

    @property
    def LOG_LEVEL(self) -> str:
        return self.log_level

    @property
    def ENCRYPTION_KEY(self) -> str:
        return self.encryption_key.get_secret_value()

    @property
    def DATABASE_URL(self) -> str:
        return self.database_url

    @property
    def REDIS_HOST(self) -> str:
        return self.redis_host

    @property
    def REDIS_PORT(self) -> int:
        return self.redis_port

    @property
    def RESULT_CACHE_TTL_SECONDS(self) -> int:
        return self.result_cache_ttl_seconds

    @property
    def PROVIDER_TIMEOUT_MS(self) -> int:
        return self.provider_timeout_ms

    def system_api_key(self, provider: str) -> Optional[str]:
        """Return the system-wide key for a provider, or None if not configured."""
        secret = {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "google": self.google_api_key,
            "cohere": self.cohere_api_key,
        }.get(provider.lower())
        if secret:
            return secret.get_secret_value() or None
        return None


settings = Settings()
