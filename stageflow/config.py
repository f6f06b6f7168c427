"""Application settings using pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    app_name: str = "Stageflow"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"

    # ==========================================================================
    # Generation endpoint (OpenAI-compatible)
    # ==========================================================================
    llm_api_key: str = Field(default="")
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-5-mini"
    llm_timeout_seconds: float = 120.0
    preflight_probe: bool = True

    # ==========================================================================
    # Planning
    # ==========================================================================
    plan_min_agents: int = Field(default=2, ge=1)
    plan_max_agents: int = Field(default=5, ge=1)
    max_suggested_inputs: int = Field(default=3, ge=1, le=3)

    # ==========================================================================
    # Execution
    # ==========================================================================
    context_char_limit: int = 800
    data_char_limit: int = 600
    synthesize_summary: bool = True

    # ==========================================================================
    # Database
    # ==========================================================================
    database_url: str = "sqlite+aiosqlite:///./stageflow.db"
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # ==========================================================================
    # API
    # ==========================================================================
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: list[str] = Field(default=["http://localhost:3000"])

    @field_validator("llm_base_url")
    @classmethod
    def _trim_base_url(cls, value: str) -> str:
        return value.strip().rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
