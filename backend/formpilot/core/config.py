"""
FormPilot - Configuration Settings
Loads environment variables and defines application settings.
"""

from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # =========================================================================
    # Application
    # =========================================================================
    APP_NAME: str = "FormPilot"
    APP_VERSION: str = "0.4.0"
    APP_ENV: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # =========================================================================
    # API
    # =========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # =========================================================================
    # Execution Engine
    # =========================================================================
    MAX_CYCLES: int = 30                   # decide -> batch -> diff cycles per session
    ACTION_TIMEOUT_SECONDS: float = 30.0   # per tool invocation
    APPROVAL_TIMEOUT_SECONDS: float = 300.0
    ACTION_RETRY_ATTEMPTS: int = 0         # extra attempts for recoverable non-barrier errors
    CONFIRM_SUBMISSIONS: bool = True       # submit-like clicks wait for operator approval

    # =========================================================================
    # Human-in-the-Loop
    # =========================================================================
    INTERVENTION_TIMEOUT_SECONDS: int = 600

    # =========================================================================
    # AI/LLM Provider (decision source)
    # =========================================================================
    OPENAI_API_KEY: Optional[str] = None
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_TEMPERATURE: float = 0.1
    LLM_MAX_TOKENS: int = 2000
    LLM_RETRY_ATTEMPTS: int = 3

    # =========================================================================
    # Playwright (Browser Automation)
    # =========================================================================
    PLAYWRIGHT_HEADLESS: bool = True
    PLAYWRIGHT_SLOW_MO: int = 0  # ms delay between actions
    PLAYWRIGHT_DEFAULT_TIMEOUT_MS: int = 10000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()
