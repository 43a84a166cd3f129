"""
Wire frames for the chat and voice socket protocols.

Every frame is a JSON object with a ``type`` key. Client frames are
validated on the way in; server frames are built here so both gateways
emit identical shapes.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import ConfigDict

from assistant_gateway.schemas.base import CamelModel
from assistant_gateway.schemas.extraction import ExtractedField


class ErrorCode(str, Enum):
    MISSING_AUTH = "MISSING_AUTH"
    INVALID_TOKEN = "INVALID_TOKEN"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    INVALID_MESSAGE = "INVALID_MESSAGE"
    UNKNOWN_MESSAGE_TYPE = "UNKNOWN_MESSAGE_TYPE"
    # chat
    EMPTY_MESSAGE = "EMPTY_MESSAGE"
    GENERATION_IN_PROGRESS = "GENERATION_IN_PROGRESS"
    SESSION_ENDED = "SESSION_ENDED"
    MESSAGE_FAILED = "MESSAGE_FAILED"
    # voice
    NO_VOICE_SESSION = "NO_VOICE_SESSION"
    INIT_FAILED = "INIT_FAILED"
    OFFER_FAILED = "OFFER_FAILED"
    ANSWER_FAILED = "ANSWER_FAILED"
    ICE_FAILED = "ICE_FAILED"


class ChatClientMessage(CamelModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    content: Optional[str] = None
    state: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class VoiceClientMessage(CamelModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    session_id: Optional[str] = None
    sdp: Optional[str] = None
    candidate: Optional[dict[str, Any]] = None


class ServerMessage(CamelModel):
    """Union of every server → client frame field; unset keys are omitted."""
    type: str
    session_id: Optional[str] = None
    message_id: Optional[str] = None
    role: Optional[str] = None
    content: Optional[str] = None
    delta: Optional[str] = None
    status: Optional[str] = None
    state: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    # extraction_update
    extraction_id: Optional[str] = None
    fields: Optional[list[ExtractedField]] = None
    extraction_status: Optional[str] = None
    overall_confidence: Optional[float] = None
    merged_fields: Optional[list[ExtractedField]] = None
    # voice
    voice_session_id: Optional[str] = None
    sdp: Optional[str] = None
    candidate: Optional[dict[str, Any]] = None
    reason: Optional[str] = None


def error_frame(code: ErrorCode, message: str) -> dict[str, Any]:
    return ServerMessage(type="error", error_code=code.value, message=message).to_wire()
