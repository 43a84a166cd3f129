"""
Typed records for app configuration payloads.

The config store returns these already validated; nothing downstream
re-checks the raw JSON.
"""

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import ConfigDict, Field

from assistant_gateway.schemas.base import CamelModel


class PromptKind(str, Enum):
    SYSTEM = "SYSTEM"
    PRE_MESSAGE = "PRE_MESSAGE"
    POST_MESSAGE = "POST_MESSAGE"
    TOOL_DESCRIPTION = "TOOL_DESCRIPTION"


class LlmConfig(CamelModel):
    provider: Literal["openai", "anthropic", "custom"] = "openai"
    model: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, ge=1)
    stream: bool = True
    system_prompt_profile_id: Optional[str] = None


class IceServer(CamelModel):
    urls: Union[str, list[str]]
    username: Optional[str] = None
    credential: Optional[str] = None


class VoiceConfig(CamelModel):
    provider: Literal["livekit", "daily", "custom"] = "custom"
    signaling_path: str = "/ws/voice"
    ice_servers: list[IceServer] = Field(
        default_factory=lambda: [IceServer(urls="stun:stun.l.google.com:19302")]
    )
    tts_provider: Optional[str] = None
    stt_provider: Optional[str] = None
    max_duration_seconds: Optional[int] = None


class FeaturesConfig(CamelModel):
    text_chat: bool = True
    voice: bool = False
    allow_file_upload: bool = False
    max_concurrent_sessions: Optional[int] = None
    extraction: bool = False


class UiThemeConfig(CamelModel):
    model_config = ConfigDict(extra="allow")

    primary_color: Optional[str] = None
    radius: Optional[str] = None
    font_scale: Optional[float] = None


class App(CamelModel):
    id: str
    project_id: str
    name: str
    is_active: bool = True


class AppConfig(CamelModel):
    app_id: str
    version: int
    is_active: bool = True
    features: FeaturesConfig = Field(default_factory=FeaturesConfig)
    ui_theme: UiThemeConfig = Field(default_factory=UiThemeConfig)
    llm_config: LlmConfig = Field(default_factory=LlmConfig)
    voice_config: Optional[VoiceConfig] = None


class PromptProfile(CamelModel):
    app_id: str
    name: str = ""
    kind: PromptKind
    content: str
    is_default: bool = False
    variables: Optional[dict[str, Any]] = None
