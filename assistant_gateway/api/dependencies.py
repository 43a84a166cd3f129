"""
Service container.

Built once in the app lifespan and stored on ``app.state.services``;
routers reach it through ``get_services``. Backends are picked from
settings so the same app runs against memory stores in development and
Supabase/Redis in deployments.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Header
from starlette.requests import HTTPConnection

from assistant_gateway.config import BusBackend, Settings, StoreBackend
from assistant_gateway.errors import AuthError
from assistant_gateway.gateway.chat import ChatGateway
from assistant_gateway.gateway.voice import VoiceRelay
from assistant_gateway.logging_config import get_logger
from assistant_gateway.services.config_store import ConfigStore, InMemoryConfigStore, SupabaseConfigStore
from assistant_gateway.services.llm_client import LLMClient
from assistant_gateway.services.media_adapter import MediaServerAdapter, PassthroughMediaAdapter
from assistant_gateway.services.session_bus import InMemorySessionBus, RedisSessionBus
from assistant_gateway.services.session_store import InMemorySessionStore, SessionStore, SupabaseSessionStore
from assistant_gateway.services.token_service import TokenService
from assistant_gateway.services.widget_session import WidgetSessionService

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    sessions: SessionStore
    configs: ConfigStore
    tokens: TokenService
    llm: Any
    bus: InMemorySessionBus
    widget_sessions: WidgetSessionService
    chat: ChatGateway
    voice: VoiceRelay

    async def aclose(self) -> None:
        await self.chat.drain()
        await self.bus.close()


def build_services(
    settings: Settings,
    sessions: Optional[SessionStore] = None,
    configs: Optional[ConfigStore] = None,
    llm: Any = None,
    bus: Optional[InMemorySessionBus] = None,
    adapter: Optional[MediaServerAdapter] = None,
) -> Services:
    """Wire every service; explicit arguments override the settings-selected backends."""
    if sessions is None or configs is None:
        if settings.store_backend == StoreBackend.SUPABASE:
            sessions = sessions or SupabaseSessionStore()
            configs = configs or SupabaseConfigStore()
        else:
            sessions = sessions or InMemorySessionStore()
            configs = configs or InMemoryConfigStore()

    if bus is None:
        if settings.bus_backend == BusBackend.REDIS:
            bus = RedisSessionBus.from_url(settings.redis_url)
        else:
            bus = InMemorySessionBus()

    if llm is None:
        llm = LLMClient(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.llm_timeout_seconds,
        )

    tokens = TokenService(settings.token_secret, settings.token_ttl_seconds)

    logger.info(
        "services_built",
        store_backend=settings.store_backend.value,
        bus_backend=settings.bus_backend.value,
    )
    return Services(
        settings=settings,
        sessions=sessions,
        configs=configs,
        tokens=tokens,
        llm=llm,
        bus=bus,
        widget_sessions=WidgetSessionService(sessions, configs, tokens, settings),
        chat=ChatGateway(sessions, configs, tokens, llm, bus, settings),
        voice=VoiceRelay(sessions, tokens, adapter or PassthroughMediaAdapter()),
    )


def get_services(connection: HTTPConnection) -> Services:
    return connection.app.state.services


def bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization:
        raise AuthError("Authorization header required", code="MISSING_AUTH")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthError("Authorization header must be 'Bearer <token>'", code="MISSING_AUTH")
    return token.strip()

