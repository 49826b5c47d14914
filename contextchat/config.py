"""Application configuration.

All settings are read from environment variables (or a local ``.env`` file)
once at startup and treated as read-only afterwards.

Usage:
    from contextchat.config import get_settings

    settings = get_settings()
    print(settings.RUNPOD_CHAT_URL)
"""
from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from contextchat.errors import ConfigurationError


class Settings(BaseSettings):
    """
    Process-wide configuration.

    Every option toggles one behavior. A missing provider URL or token
    disables that provider (requests answer 500 "not configured"); a
    missing SEARXNG_URL silently disables web augmentation.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    DATABASE_URL: str = "sqlite:///./contextchat.db"
    CORS_ORIGINS: str = "*"

    # Shared secret used to verify bearer tokens (HS256)
    AUTH_JWT_SECRET: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AUTH_JWT_SECRET", "SUPABASE_JWT_SECRET"),
    )

    # OpenRouter (streaming chat + rollup summaries)
    OPENROUTER_API_KEY: Optional[str] = None
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_MODEL: str = "z-ai/glm-4.5-air:free"
    OPENROUTER_SITE_URL: str = "https://localhost"
    OPENROUTER_APP_NAME: str = "contextchat"
    OPENROUTER_TIMEOUT: float = 60.0
    ROLLUP_MODEL: str = "z-ai/glm-4.5-air:free"

    # RunPod chat worker (non-streaming persistence chat)
    RUNPOD_CHAT_URL: Optional[str] = None
    RUNPOD_CHAT_TOKEN: Optional[str] = None
    RUNPOD_CHAT_TIMEOUT: float = 90.0
    CHAT_MODEL: str = "deepseek-ai/DeepSeek-R1-Distill-Qwen-14B"

    # Translation backends
    RUNPOD_TRANSLATE_URL: Optional[str] = None
    RUNPOD_TRANSLATE_TOKEN: Optional[str] = None
    RUNPOD_TRANSLATE_TIMEOUT: float = 90.0
    MADLAD_RUNPOD_URL: Optional[str] = None
    MADLAD_API_KEY: Optional[str] = None

    # Web search backend (SearxNG)
    SEARXNG_URL: Optional[str] = None
    SEARXNG_TIMEOUT: float = 8.0

    def require(self, *names: str) -> None:
        """
        Fail fast when required options are unset.

        Raises:
            ConfigurationError: naming every missing option at once
        """
        missing = [name for name in names if not (getattr(self, name, None) or "").strip()]
        if missing:
            raise ConfigurationError(missing)

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
