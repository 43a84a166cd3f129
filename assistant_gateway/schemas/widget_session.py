"""
Request/response models for the widget session-init endpoint.
"""

from typing import Optional

from pydantic import Field, HttpUrl

from assistant_gateway.schemas.app_config import FeaturesConfig, IceServer, UiThemeConfig
from assistant_gateway.schemas.base import CamelModel
from assistant_gateway.schemas.session import SessionMetadata


class InitSessionRequest(CamelModel):
    project_id: str = Field(min_length=1)
    widget_instance_id: str = Field(min_length=1)
    external_user_id: Optional[str] = None
    page_url: Optional[HttpUrl] = None
    host_origin: Optional[str] = None
    user_agent: Optional[str] = None
    locale: Optional[str] = None
    metadata: Optional[SessionMetadata] = None


class ChatEndpoint(CamelModel):
    ws_url: str


class RtcConfig(CamelModel):
    ice_servers: list[IceServer] = Field(default_factory=list)


class VoiceEndpoint(CamelModel):
    enabled: bool = True
    signaling_url: str
    rtc_config: Optional[RtcConfig] = None


class UiHints(CamelModel):
    welcome_message: str = "Welcome! How can I assist you today?"
    widget_title: str = "AI Assistant"
    input_placeholder: str = "Type your message..."
    send_button_text: str = "Send"
    voice_button_text: str = "Start Voice"
    end_call_button_text: str = "End Call"
    empty_state_message: str = "Hi there!"
    empty_state_subtitle: str = "How can I help you today?"
    logo_url: Optional[str] = None


class InitSessionResponse(CamelModel):
    session_id: str
    config_version: int
    token: str
    features: FeaturesConfig
    theme: UiThemeConfig
    chat: ChatEndpoint
    voice: Optional[VoiceEndpoint] = None
    ui_hints: UiHints = Field(default_factory=UiHints)
