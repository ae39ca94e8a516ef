import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

#---------------CONFIGURATION---------------
# Ensure .env is read from repo root (if present)
load_dotenv()


class Settings(BaseSettings):
    # Read .env by default (repo root). You can also export envs directly.
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    OPENAI_API_KEY: Optional[str] = None
    TRIAGE_LLM_MODEL: str = "gpt-4o-mini"
    TRIAGE_MOCK_LLM: bool = False  # Keyword classifier + regex extraction, no API calls
    TRIAGE_TIER2_TIMEOUT_S: float = Field(default=5.0, gt=0, le=60)
    TRIAGE_METADATA_TIMEOUT_S: float = Field(default=5.0, gt=0, le=60)
    TRIAGE_ENVIRONMENT: str = os.getenv("TRIAGE_ENVIRONMENT", "development")
    TRIAGE_STRICT_MODE: Optional[bool] = None  # Defaults to True in development

    # Initial timing values; live changes go through TimingConfigStore
    TRIAGE_SKU_DEBOUNCE_MS: int = 300
    TRIAGE_TIER2_LLM_DEBOUNCE_MS: int = 500
    TRIAGE_METADATA_DEBOUNCE_MS: int = 1500
    TRIAGE_METADATA_CHUNK_INTERVAL: int = 5
    TRIAGE_METADATA_CHAR_THRESHOLD: int = 150

    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 5001
    LOG_LEVEL: str = "INFO"

    @property
    def strict_mode(self) -> bool:
        """Tier 1 bugs propagate (stopping the session) instead of being skipped."""
        if self.TRIAGE_STRICT_MODE is not None:
            return self.TRIAGE_STRICT_MODE
        return self.TRIAGE_ENVIRONMENT == "development"

    @property
    def use_llm(self) -> bool:
        return bool(self.OPENAI_API_KEY) and not self.TRIAGE_MOCK_LLM


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
