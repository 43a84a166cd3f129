"""
Data models for widget sessions, chat history and voice sessions.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import Field

from assistant_gateway.schemas.base import CamelModel
from assistant_gateway.schemas.extraction import ExtractedField, FormSchema


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"


class ChatRole(str, Enum):
    USER = "USER"
    ASSISTANT = "ASSISTANT"
    SYSTEM = "SYSTEM"


class VoiceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"


class SessionMetadata(CamelModel):
    """Extraction configuration attached to a session at init time."""
    form_schema: Optional[FormSchema] = None
    form_type: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def extraction_enabled(self) -> bool:
        return bool(self.form_schema and self.form_schema.properties and self.form_type)


class Session(CamelModel):
    id: str
    app_id: str
    config_version: int
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime
    last_seen_at: datetime
    ended_at: Optional[datetime] = None
    external_user_id: Optional[str] = None
    widget_instance_id: Optional[str] = None
    host_origin: Optional[str] = None
    host_path: Optional[str] = None
    user_agent: Optional[str] = None
    locale: Optional[str] = None
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    extracted_fields: dict[str, ExtractedField] = Field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


class NewSession(CamelModel):
    """Everything the store needs to create a session row."""
    app_id: str
    config_version: int
    external_user_id: Optional[str] = None
    widget_instance_id: Optional[str] = None
    host_origin: Optional[str] = None
    host_path: Optional[str] = None
    user_agent: Optional[str] = None
    locale: Optional[str] = None
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)


class ChatMessage(CamelModel):
    id: str
    session_id: str
    role: ChatRole
    content: str
    created_at: datetime

    def as_prompt_message(self) -> dict[str, Any]:
        """Shape used in chat-completion ``messages`` arrays."""
        return {"role": self.role.value.lower(), "content": self.content}


class VoiceSession(CamelModel):
    id: str
    widget_session_id: str
    status: VoiceStatus = VoiceStatus.ACTIVE
    started_at: datetime
    ended_at: Optional[datetime] = None
    signaling_channel_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == VoiceStatus.ACTIVE
