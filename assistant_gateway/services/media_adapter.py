"""
Media-server adapter seam for the voice signaling relay.

The relay never touches audio. It hands WebRTC negotiation to an adapter:
a real deployment plugs in an SFU client (LiveKit, Daily, ...) that
returns the media server's answer SDP and forwards ICE candidates. The
default ``PassthroughMediaAdapter`` negotiates nothing; it derives a
receive-only answer from the offer so the signaling flow can be exercised
end to end without a media server.
"""

from __future__ import annotations

from typing import Any, Protocol

from assistant_gateway.logging_config import get_logger

logger = get_logger(__name__)


class MediaServerAdapter(Protocol):
    async def negotiate_offer(self, voice_session_id: str, offer_sdp: str) -> str:
        """Return the answer SDP for a client offer."""
        ...

    async def accept_answer(self, voice_session_id: str, answer_sdp: str) -> None: ...

    async def add_ice_candidate(self, voice_session_id: str, candidate: dict[str, Any]) -> None: ...

    async def release(self, voice_session_id: str) -> None:
        """Tear down whatever the adapter holds for the voice session."""
        ...


class PassthroughMediaAdapter:
    """Placeholder adapter: rewrites the offer's direction into an answer."""

    async def negotiate_offer(self, voice_session_id: str, offer_sdp: str) -> str:
        logger.info("passthrough_offer", voice_session_id=voice_session_id, sdp_length=len(offer_sdp))
        return offer_sdp.replace("a=sendrecv", "a=recvonly")

    async def accept_answer(self, voice_session_id: str, answer_sdp: str) -> None:
        logger.info("passthrough_answer", voice_session_id=voice_session_id, sdp_length=len(answer_sdp))

    async def add_ice_candidate(self, voice_session_id: str, candidate: dict[str, Any]) -> None:
        logger.debug("passthrough_ice_candidate", voice_session_id=voice_session_id)

    async def release(self, voice_session_id: str) -> None:
        return None
