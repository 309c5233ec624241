from __future__ import annotations

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(RuntimeError):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    openai_api_key: SecretStr | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_base_url: str = Field(default="https://api.openai.com/v1", alias="OPENAI_BASE_URL")

    category_model: str = Field(default="gpt-4.1-nano", alias="TRIAGE_CATEGORY_MODEL")
    summary_model: str = Field(default="gpt-4.1-mini", alias="TRIAGE_SUMMARY_MODEL")
    prompt_version: str = Field(default="triage-v1", alias="TRIAGE_PROMPT_VERSION")

    category_batch_size: int = Field(default=24, gt=0, alias="TRIAGE_CATEGORY_BATCH_SIZE")
    summary_batch_size: int = Field(default=16, gt=0, alias="TRIAGE_SUMMARY_BATCH_SIZE")
    fetch_concurrency: int = Field(default=6, gt=0, alias="TRIAGE_FETCH_CONCURRENCY")
    fetch_timeout_s: float = Field(default=10.0, gt=0, alias="TRIAGE_FETCH_TIMEOUT_S")
    llm_timeout_s: float = Field(default=60.0, gt=0, alias="TRIAGE_LLM_TIMEOUT_S")
    user_agent: str = Field(default="bookmark-manager-triage/1.0", alias="TRIAGE_USER_AGENT")
    abandoned_run_after_s: float = Field(default=6 * 3600, gt=0, alias="TRIAGE_ABANDONED_RUN_AFTER_S")

    pg_dsn: str | None = Field(default=None, alias="PG_DSN")
    pg_schema: str = Field(default="public", alias="PG_SCHEMA")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    def require_api_key(self) -> str:
        key = self.openai_api_key.get_secret_value() if self.openai_api_key else ""
        if not key.strip():
            raise ConfigurationError(
                "OPENAI_API_KEY is not set. Add it to your environment before running triage."
            )
        return key


def load_settings() -> Settings:
    return Settings()
