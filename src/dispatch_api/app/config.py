"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]

# Checked in order when DISPATCH_GEMINI_API_KEY is unset.
GEMINI_KEY_ENV_NAMES = (
    "GOOGLE_GEMINI_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_GENERATIVE_AI_API_KEY",
)


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "dispatch-api"
    database_url: str = ""
    llm_provider: str = "gemini"
    llm_model: str = "gemini-2.0-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    openai_base_url: str = "https://api.openai.com/v1"
    gemini_api_key: str = ""
    openai_api_key: str = ""
    llm_timeout_s: float = Field(default=120.0, ge=0.5)
    article_fetch_timeout_s: float = Field(default=15.0, ge=0.5)
    article_max_chars: int = Field(default=20_000, ge=0)
    prompt_content_max_chars: int = Field(default=10_000, ge=100)
    user_agent: str = "DispatchAPI/1.0 (+https://example.invalid/dispatch-api)"

    model_config = SettingsConfigDict(
        env_prefix="DISPATCH_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_gemini_api_key(self) -> str:
        if self.gemini_api_key:
            return self.gemini_api_key
        for name in GEMINI_KEY_ENV_NAMES:
            value = os.getenv(name, "").strip()
            if value:
                return value
        return ""

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def resolved_api_key(self) -> str:
        if self.llm_provider.lower() == "openai":
            return self.resolved_openai_api_key()
        return self.resolved_gemini_api_key()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
