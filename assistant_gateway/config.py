"""
Application configuration via environment variables.

Uses Pydantic BaseSettings to load and validate all config from env vars
or a .env.local file. Every setting has a sensible default for local
development so the gateway can start with an in-memory store and no
external services.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment selector."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class StoreBackend(str, Enum):
    MEMORY = "memory"
    SUPABASE = "supabase"


class BusBackend(str, Enum):
    MEMORY = "memory"
    REDIS = "redis"


class ExtractionMode(str, Enum):
    """What the chat gateway sends to the extraction engine per user turn."""

    CONVERSATION = "conversation"
    INCREMENTAL = "incremental"


class Settings(BaseSettings):
    """
    Central configuration for the Assistant Gateway.

    Values are loaded from environment variables first, falling back
    to a `.env.local` file in the project root. Secrets should NEVER
    be committed; use `.env.example` as the template.
    """

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Environment ──────────────────────────────────────────────
    environment: Environment = Environment.DEVELOPMENT
    base_url: str = Field(default="http://localhost:3001", description="Public base URL used to build WebSocket URLs")

    # ── Session tokens ───────────────────────────────────────────
    token_secret: str = Field(default="dev-only-widget-token-secret-change-me", description="HMAC secret for widget session tokens")
    token_ttl_seconds: int = Field(default=3600, ge=60, le=86400, description="Lifetime of a widget session token")

    # ── LLM provider ─────────────────────────────────────────────
    openai_api_key: str = Field(default="", description="OpenAI API key for chat and extraction")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI-compatible API root")
    default_model: str = Field(default="gpt-4-turbo", description="Model used when the app config names none")
    llm_timeout_seconds: float = Field(default=60.0, gt=0, description="Upper bound for one streamed generation")

    # ── Extraction ───────────────────────────────────────────────
    extraction_timeout_seconds: float = Field(default=30.0, gt=0, description="Upper bound for one extraction call")
    extraction_temperature: float = Field(default=0.1, ge=0.0, le=2.0, description="Sampling temperature for extraction")
    extraction_mode: ExtractionMode = ExtractionMode.CONVERSATION
    history_window: int = Field(default=10, ge=1, le=100, description="Prior messages included in prompts")

    # ── Persistence ──────────────────────────────────────────────
    store_backend: StoreBackend = StoreBackend.MEMORY
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_key: str = Field(default="", description="Supabase service-role key")

    # ── Session bus ──────────────────────────────────────────────
    bus_backend: BusBackend = BusBackend.MEMORY
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")

    # ── HTTP limits ──────────────────────────────────────────────
    rate_limit_max: int = Field(default=100, ge=1, description="Requests per window per client IP")
    rate_limit_window_seconds: int = Field(default=60, ge=1, description="Rate limit window")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO", description="Root log level")

    # ── Derived helpers ──────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def ws_base_url(self) -> str:
        """``base_url`` with its http(s) scheme swapped for ws(s)."""
        if self.base_url.startswith("https"):
            return "wss" + self.base_url[len("https"):]
        if self.base_url.startswith("http"):
            return "ws" + self.base_url[len("http"):]
        return self.base_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached Settings instance.

    Using lru_cache ensures we read env vars exactly once, and every
    module that calls ``get_settings()`` gets the same object.
    """
    return Settings()
