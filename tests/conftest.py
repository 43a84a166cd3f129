"""
Shared fixtures: in-memory stores, token service and a seeded config store.
"""

from typing import Any, Callable, Optional

import pytest

from assistant_gateway.config import Settings
from assistant_gateway.schemas.app_config import (
    App,
    AppConfig,
    FeaturesConfig,
    LlmConfig,
    PromptKind,
    PromptProfile,
    VoiceConfig,
)
from assistant_gateway.schemas.extraction import FormSchema
from assistant_gateway.schemas.session import NewSession, SessionMetadata
from assistant_gateway.services.config_store import InMemoryConfigStore
from assistant_gateway.services.session_bus import InMemorySessionBus
from assistant_gateway.services.session_store import InMemorySessionStore
from assistant_gateway.services.token_service import TokenService

from fakes import SYSTEM_PROMPT, TEST_SECRET, FakeLLM


@pytest.fixture
def settings() -> Settings:
    return Settings(
        token_secret=TEST_SECRET,
        base_url="https://assist.example.com",
        llm_timeout_seconds=5,
        extraction_timeout_seconds=5,
    )


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(TEST_SECRET, ttl_seconds=3600)


@pytest.fixture
def sessions() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def bus() -> InMemorySessionBus:
    return InMemorySessionBus()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def configs() -> InMemoryConfigStore:
    store = InMemoryConfigStore()
    store.add_app(App(id="app-1", project_id="proj-1", name="Acme Assistant"))
    store.add_config(AppConfig(
        app_id="app-1",
        version=2,
        features=FeaturesConfig(voice=True),
        llm_config=LlmConfig(model="gpt-4o-mini", temperature=0.3, max_tokens=500),
        voice_config=VoiceConfig(),
    ))
    store.add_config(AppConfig(app_id="app-1", version=1))
    store.add_prompt(PromptProfile(app_id="app-1", kind=PromptKind.SYSTEM, content=SYSTEM_PROMPT, is_default=True))
    store.add_prompt(PromptProfile(app_id="app-1", kind=PromptKind.PRE_MESSAGE, content="Hi from Acme!", is_default=True))

    store.add_app(App(id="app-off", project_id="proj-off", name="Disabled", is_active=False))
    store.add_app(App(id="app-empty", project_id="proj-empty", name="No Config"))
    return store


@pytest.fixture
def new_session() -> Callable[..., Any]:
    def _make(form_schema: Optional[dict[str, Any]] = None, form_type: Optional[str] = None) -> NewSession:
        metadata = SessionMetadata(
            form_schema=FormSchema.model_validate(form_schema) if form_schema else None,
            form_type=form_type,
        )
        return NewSession(app_id="app-1", config_version=2, widget_instance_id="w-1", metadata=metadata)

    return _make
