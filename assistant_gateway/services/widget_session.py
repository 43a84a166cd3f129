"""
Widget Session Service.

Handles session init, the single HTTP call a widget makes before opening
either socket: resolves the app and its active config, creates the
session row, issues the session token and returns everything the client
needs to connect.
"""

from __future__ import annotations

from urllib.parse import urlencode

from assistant_gateway.config import Settings, get_settings
from assistant_gateway.errors import NotFoundError, ValidationError
from assistant_gateway.logging_config import get_logger
from assistant_gateway.schemas.app_config import PromptKind
from assistant_gateway.schemas.session import NewSession, Session, SessionMetadata
from assistant_gateway.schemas.widget_session import (
    ChatEndpoint,
    InitSessionRequest,
    InitSessionResponse,
    RtcConfig,
    UiHints,
    VoiceEndpoint,
)
from assistant_gateway.services.config_store import ConfigStore
from assistant_gateway.services.session_store import SessionStore
from assistant_gateway.services.token_service import TokenService

logger = get_logger(__name__)

CHAT_PATH = "/ws/chat"


class WidgetSessionService:
    def __init__(
        self,
        sessions: SessionStore,
        configs: ConfigStore,
        tokens: TokenService,
        settings: Settings | None = None,
    ) -> None:
        self.sessions = sessions
        self.configs = configs
        self.tokens = tokens
        self.settings = settings or get_settings()

    async def init_session(self, request: InitSessionRequest) -> InitSessionResponse:
        """
        Create a widget session.

        Raises:
            NotFoundError: no app matches ``project_id``.
            ValidationError: the app is inactive or has no active config.
        """
        app = await self.configs.find_app_by_project(request.project_id)
        if app is None:
            raise NotFoundError(
                f"App not found for projectId: {request.project_id}",
                code="APP_NOT_FOUND",
            )
        if not app.is_active:
            raise ValidationError("This app is currently inactive", code="APP_INACTIVE")

        config = await self.configs.get_active_config(app.id)
        if config is None:
            raise ValidationError("No active configuration found for this app", code="NO_ACTIVE_CONFIG")

        session = await self.sessions.create_session(NewSession(
            app_id=app.id,
            config_version=config.version,
            external_user_id=request.external_user_id,
            widget_instance_id=request.widget_instance_id,
            host_origin=request.host_origin,
            host_path=str(request.page_url) if request.page_url else None,
            user_agent=request.user_agent,
            locale=request.locale,
            metadata=request.metadata or SessionMetadata(),
        ))

        token = self.tokens.issue(session.id, app.id)
        welcome = await self.configs.get_default_prompt(app.id, PromptKind.PRE_MESSAGE)

        response = InitSessionResponse(
            session_id=session.id,
            config_version=config.version,
            token=token,
            features=config.features,
            theme=config.ui_theme,
            chat=ChatEndpoint(ws_url=self._socket_url(CHAT_PATH, session, token)),
            ui_hints=UiHints(
                welcome_message=welcome.content if welcome else UiHints().welcome_message,
                widget_title=app.name or UiHints().widget_title,
            ),
        )

        if config.features.voice and config.voice_config:
            response.voice = VoiceEndpoint(
                enabled=True,
                signaling_url=self._socket_url(config.voice_config.signaling_path, session, token),
                rtc_config=RtcConfig(ice_servers=config.voice_config.ice_servers),
            )

        logger.info(
            "widget_session_initialized",
            session_id=session.id,
            app_id=app.id,
            config_version=config.version,
            voice=response.voice is not None,
            extraction=session.metadata.extraction_enabled,
        )
        return response

    def _socket_url(self, path: str, session: Session, token: str) -> str:
        query = urlencode({"sessionId": session.id, "token": token})
        return f"{self.settings.ws_base_url}{path}?{query}"
