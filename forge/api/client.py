"""Streaming client for the Anthropic Messages API.

One POST per model call; the response body is read line by line and fed
to a StreamDecoder as it arrives.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx

from forge.api.errors import ApiError, MissingApiKeyError
from forge.api.models import Message, to_json
from forge.api.stream import DecodedResponse, StreamDecoder
from forge.config import Settings

logger = logging.getLogger(__name__)

_MESSAGES_PATH = "/v1/messages"


class AnthropicClient:
    """Thin httpx wrapper around the streaming Messages endpoint.

    Use ``start()``/``close()`` or ``async with``.  A custom transport can
    be passed for tests (``httpx.MockTransport``).
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        if not settings.anthropic_api_key:
            raise MissingApiKeyError()

        headers = {
            "x-api-key": settings.anthropic_api_key,
            "anthropic-version": settings.api_version,
            "content-type": "application/json",
        }
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=4, max_keepalive_connections=2)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )
        logger.debug("httpx client initialized for %s", settings.api_base_url)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> AnthropicClient:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def build_payload(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
    ) -> dict[str, Any]:
        """Build the streaming request body for the current conversation."""
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "stream": True,
            "system": [
                {
                    "type": "text",
                    "text": system_prompt,
                    "cache_control": {"type": "ephemeral"},
                }
            ],
            "messages": [m.to_wire() for m in messages],
        }
        if tools:
            payload["tools"] = tools
        return payload

    async def send_message(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
        on_text: Callable[[str], None] | None = None,
    ) -> DecodedResponse:
        """Send the conversation and decode the streamed reply.

        Raises:
            ApiError: on connection failure or a non-success HTTP status.
            StreamDecodeError: if the stream is malformed, reports an error
                or ends without a stop reason.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self.build_payload(messages, tools, system_prompt)
        body = to_json(payload).encode("utf-8")
        logger.debug("POST %s (%d messages, %d bytes)", _MESSAGES_PATH, len(messages), len(body))

        decoder = StreamDecoder(on_text=on_text)
        try:
            async with self._http.stream("POST", _MESSAGES_PATH, content=body) as response:
                if response.status_code != 200:
                    error_body = (await response.aread()).decode("utf-8", errors="replace")
                    raise ApiError.from_status(response.status_code, error_body)

                # aiter_lines also yields a final line that has no terminator
                async for line in response.aiter_lines():
                    decoder.process_line(line)
        except httpx.HTTPError as e:
            raise ApiError(f"API: {e}") from e

        result = decoder.finish()
        logger.debug(
            "Decoded %d blocks, stop_reason=%s, usage=%s",
            len(result.content),
            result.stop_reason.value,
            result.usage.to_dict(),
        )
        return result
