"""
API Router: Widget Session Endpoints.

Session init plus read access to a session's chat history and merged
extraction state. Read endpoints require the session's bearer token.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from assistant_gateway.api.dependencies import Services, bearer_token, get_services
from assistant_gateway.errors import AuthError
from assistant_gateway.logging_config import get_logger
from assistant_gateway.schemas.widget_session import InitSessionRequest, InitSessionResponse

logger = get_logger(__name__)
router = APIRouter(prefix="/widget/session", tags=["Widget Sessions"])


@router.post("/init", response_model=InitSessionResponse, response_model_by_alias=True, response_model_exclude_none=True)
async def init_session(
    body: InitSessionRequest,
    services: Services = Depends(get_services),
) -> InitSessionResponse:
    """Create a widget session and return its token and socket endpoints."""
    return await services.widget_sessions.init_session(body)


@router.get("/{session_id}/messages")
async def list_messages(
    session_id: str,
    token: str = Depends(bearer_token),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Chat history in creation order."""
    _check_token(services, token, session_id)
    await services.sessions.get_session(session_id)
    messages = await services.sessions.list_messages(session_id)
    return {
        "sessionId": session_id,
        "messages": [m.to_wire() for m in messages],
        "count": len(messages),
    }


@router.get("/{session_id}/extraction")
async def get_extraction(
    session_id: str,
    token: str = Depends(bearer_token),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    """Merged extraction field map for the session."""
    _check_token(services, token, session_id)
    merged = await services.sessions.get_merged_fields(session_id)
    return {
        "sessionId": session_id,
        "fields": {name: f.to_wire() for name, f in merged.items()},
    }


def _check_token(services: Services, token: str, session_id: str) -> None:
    if not services.tokens.validate_for_session(token, session_id):
        raise AuthError("Invalid session token")
