"""
Config Store.

Read-only view of apps, their active configuration and prompt profiles.
Administration of these rows happens elsewhere; the gateway only reads.
Raw JSON payloads are validated into typed records here, once.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from assistant_gateway.logging_config import get_logger
from assistant_gateway.schemas.app_config import App, AppConfig, PromptKind, PromptProfile

logger = get_logger(__name__)

FALLBACK_SYSTEM_PROMPT = "You are a helpful AI assistant. Be concise, friendly, and accurate in your responses."


class ConfigStore(ABC):
    @abstractmethod
    async def find_app_by_project(self, project_id: str) -> Optional[App]: ...

    @abstractmethod
    async def get_app(self, app_id: str) -> Optional[App]: ...

    @abstractmethod
    async def get_active_config(self, app_id: str) -> Optional[AppConfig]:
        """Highest-version active config for the app."""

    @abstractmethod
    async def get_default_prompt(self, app_id: str, kind: PromptKind) -> Optional[PromptProfile]: ...

    async def system_prompt(self, app_id: str) -> str:
        """The app's default SYSTEM prompt, or the generic fallback."""
        profile = await self.get_default_prompt(app_id, PromptKind.SYSTEM)
        return profile.content if profile else FALLBACK_SYSTEM_PROMPT


class InMemoryConfigStore(ConfigStore):
    def __init__(self) -> None:
        self._apps: dict[str, App] = {}
        self._configs: dict[str, list[AppConfig]] = {}
        self._prompts: dict[str, list[PromptProfile]] = {}

    def add_app(self, app: App) -> App:
        self._apps[app.id] = app
        return app

    def add_config(self, config: AppConfig) -> AppConfig:
        self._configs.setdefault(config.app_id, []).append(config)
        return config

    def add_prompt(self, prompt: PromptProfile) -> PromptProfile:
        self._prompts.setdefault(prompt.app_id, []).append(prompt)
        return prompt

    async def find_app_by_project(self, project_id: str) -> Optional[App]:
        for app in self._apps.values():
            if app.project_id == project_id:
                return app
        return None

    async def get_app(self, app_id: str) -> Optional[App]:
        return self._apps.get(app_id)

    async def get_active_config(self, app_id: str) -> Optional[AppConfig]:
        active = [c for c in self._configs.get(app_id, []) if c.is_active]
        return max(active, key=lambda c: c.version) if active else None

    async def get_default_prompt(self, app_id: str, kind: PromptKind) -> Optional[PromptProfile]:
        for prompt in self._prompts.get(app_id, []):
            if prompt.kind == kind and prompt.is_default:
                return prompt
        return None


class SupabaseConfigStore(ConfigStore):
    """Reads ``apps``, ``app_configs`` and ``prompt_profiles`` (snake_case columns)."""

    def __init__(self, db: Any = None) -> None:
        if db is None:
            from assistant_gateway.db import get_db
            db = get_db()
        self._db = db

    async def find_app_by_project(self, project_id: str) -> Optional[App]:
        row = self._db.fetch_one("apps", project_id=project_id)
        return App.model_validate(row) if row else None

    async def get_app(self, app_id: str) -> Optional[App]:
        row = self._db.fetch_one("apps", id=app_id)
        return App.model_validate(row) if row else None

    async def get_active_config(self, app_id: str) -> Optional[AppConfig]:
        rows = self._db.fetch_many(
            "app_configs", order_by="version", desc=True, limit=1, app_id=app_id, is_active=True
        )
        return AppConfig.model_validate(rows[0]) if rows else None

    async def get_default_prompt(self, app_id: str, kind: PromptKind) -> Optional[PromptProfile]:
        row = self._db.fetch_one("prompt_profiles", app_id=app_id, kind=kind.value, is_default=True)
        return PromptProfile.model_validate(row) if row else None
