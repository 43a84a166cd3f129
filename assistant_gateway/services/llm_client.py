"""
LLM provider client.

Talks to an OpenAI-compatible ``/chat/completions`` endpoint over httpx:
streamed chat completions (server-sent events) for the chat gateway and
forced tool calls for the extraction engine. Provider failures surface as
``UpstreamError``; callers decide how to recover.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx

from assistant_gateway.errors import UpstreamError
from assistant_gateway.logging_config import get_logger

logger = get_logger(__name__)

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


@dataclass
class ToolCall:
    name: str
    arguments: str


class LLMClient:
    """Minimal async client for chat completions."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            logger.warning("llm_api_key_missing")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
        )

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 2000,
    ) -> AsyncIterator[str]:
        """
        Yield content deltas in generation order.

        Closing the iterator (``aclose`` or task cancellation) closes the
        underlying HTTP stream.
        """
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        }
        async with self._client() as client:
            try:
                async with client.stream("POST", "/chat/completions", json=payload) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        logger.error("llm_stream_http_error", status=response.status_code, body=body[:500])
                        raise UpstreamError(
                            f"LLM provider returned {response.status_code}",
                            details={"status": response.status_code},
                        )

                    async for line in response.aiter_lines():
                        delta = _parse_sse_delta(line)
                        if delta is None:
                            continue
                        if delta is _DONE:
                            break
                        yield delta
            except httpx.HTTPError as e:
                logger.error("llm_stream_transport_error", error=str(e))
                raise UpstreamError(f"LLM stream failed: {e}") from e

    async def complete_with_tool(
        self,
        messages: list[dict[str, Any]],
        tool: dict[str, Any],
        model: str,
        temperature: float = 0.1,
    ) -> ToolCall | None:
        """
        Run a completion forced to call ``tool``.

        Returns the first function tool call, or None when the reply has none.
        """
        tool_name = tool["function"]["name"]
        payload = {
            "model": model,
            "messages": messages,
            "tools": [tool],
            "tool_choice": {"type": "function", "function": {"name": tool_name}},
            "temperature": temperature,
        }
        async with self._client() as client:
            try:
                response = await client.post("/chat/completions", json=payload)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as e:
                raise UpstreamError(
                    f"LLM provider returned {e.response.status_code}",
                    details={"status": e.response.status_code},
                ) from e
            except (httpx.HTTPError, ValueError) as e:
                raise UpstreamError(f"LLM tool call failed: {e}") from e

        try:
            tool_calls = data["choices"][0]["message"].get("tool_calls") or []
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise UpstreamError("Malformed completion response") from e

        for call in tool_calls:
            if call.get("type", "function") == "function" and call.get("function"):
                return ToolCall(
                    name=call["function"].get("name", ""),
                    arguments=call["function"].get("arguments") or "{}",
                )
        return None


_DONE = object()


def _parse_sse_delta(line: str) -> Any:
    """
    Parse one SSE line into a content delta.

    Returns the delta string, ``_DONE`` at end of stream, or None for lines
    that carry no content (blank keep-alives, role-only chunks).
    """
    line = line.strip()
    if not line.startswith(SSE_DATA_PREFIX):
        return None
    data = line[len(SSE_DATA_PREFIX):].strip()
    if data == SSE_DONE:
        return _DONE
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError as e:
        raise UpstreamError("Malformed stream chunk") from e
    choices = chunk.get("choices") or []
    if not choices:
        return None
    content = (choices[0].get("delta") or {}).get("content")
    return content or None
