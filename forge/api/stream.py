"""Decoder for the Anthropic Messages API server-sent event stream.

StreamDecoder is a resumable state machine fed one line at a time.  It
rebuilds the response's content blocks by index, reassembles tool input
JSON from its fragments and resolves the stop reason.

Block indices from the API are dense across every block kind, including
kinds we do not model (e.g. thinking).  Those get an empty TextBlock
placeholder so later indices still line up, and the placeholders are
dropped in finish() if nothing was appended to them.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from forge.api.errors import StreamDecodeError
from forge.api.models import ContentBlock, StopReason, TextBlock, ToolUseBlock, Usage

logger = logging.getLogger(__name__)


@dataclass
class DecodedResponse:
    """A fully decoded assistant response."""

    content: list[ContentBlock]
    stop_reason: StopReason
    usage: Usage = field(default_factory=Usage)


def _object(payload: dict[str, Any], key: str) -> dict[str, Any]:
    """``payload[key]`` as a dict; a missing or null field reads as empty.

    Raises:
        StreamDecodeError: if the field is present but not an object.
    """
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise StreamDecodeError(
            f"invalid event payload: {key} must be an object, got {type(value).__name__}"
        )
    return value


def _token_count(usage: dict[str, Any], key: str) -> int:
    value = usage.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise StreamDecodeError(f"invalid event payload: usage.{key} must be an integer")
    return value


def _string(delta: dict[str, Any], key: str) -> str:
    value = delta.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise StreamDecodeError(f"invalid event payload: delta.{key} must be a string")
    return value


def _block_index(payload: dict[str, Any]) -> int | None:
    index = payload.get("index")
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        return None
    return index


class StreamDecoder:
    """Turns SSE lines into (content blocks, stop reason).

    Args:
        on_text: Optional callback invoked with every text delta as it
            arrives, for live display.  Not needed for correctness.
    """

    def __init__(self, on_text: Callable[[str], None] | None = None) -> None:
        self._on_text = on_text
        self._event = ""
        self._blocks: list[ContentBlock] = []
        self._fragments: list[str] = []
        self._stop_reason: StopReason | None = None
        self._message_complete = False
        self._usage = Usage()

    def process_line(self, line: str) -> None:
        """Consume one protocol line.

        Raises:
            StreamDecodeError: on a malformed payload or an ``error`` event.
        """
        line = line.rstrip("\r\n")
        if not line:
            return
        if line.startswith("event:"):
            self._event = line[len("event:"):].strip()
            return
        if not line.startswith("data:"):
            return

        raw = line[len("data:"):].lstrip(" ")
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StreamDecodeError(f"invalid event payload: {e}") from e
        if not isinstance(payload, dict):
            raise StreamDecodeError(
                f"invalid event payload: expected object, got {type(payload).__name__}"
            )

        event = self._event or payload.get("type", "")
        self._event = ""
        handler = self._HANDLERS.get(event)
        if handler is not None:
            handler(self, payload)

    def feed(self, lines: Iterable[str]) -> None:
        """Consume several lines in order."""
        for line in lines:
            self.process_line(line)

    def finish(self) -> DecodedResponse:
        """Resolve the decoded blocks and stop reason once the stream ends.

        Raises:
            StreamDecodeError: if the stream never delivered a stop reason,
                which is how a dropped connection shows up.
        """
        blocks = [b for b in self._blocks if not (isinstance(b, TextBlock) and not b.text)]
        stop_reason = self._stop_reason
        if stop_reason is None and self._message_complete:
            stop_reason = StopReason.END_TURN
        if stop_reason is None:
            raise StreamDecodeError("stream ended without stop_reason")
        return DecodedResponse(content=blocks, stop_reason=stop_reason, usage=self._usage)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_message_start(self, payload: dict[str, Any]) -> None:
        usage = _object(_object(payload, "message"), "usage")
        self._usage.input_tokens = _token_count(usage, "input_tokens")

    def _on_block_start(self, payload: dict[str, Any]) -> None:
        block = _object(payload, "content_block")
        tool_id = block.get("id")
        tool_name = block.get("name")
        if (
            block.get("type") == "tool_use"
            and isinstance(tool_id, str)
            and isinstance(tool_name, str)
            and tool_id
            and tool_name
        ):
            self._blocks.append(ToolUseBlock(id=tool_id, name=tool_name))
        else:
            # Text, unknown kinds and nameless tool calls all become placeholders
            self._blocks.append(TextBlock())
        self._fragments.append("")

    def _on_block_delta(self, payload: dict[str, Any]) -> None:
        index = _block_index(payload)
        if index is None:
            return
        delta = _object(payload, "delta")
        delta_type = delta.get("type")

        if delta_type == "text_delta":
            text = _string(delta, "text")
            if text and self._on_text is not None:
                self._on_text(text)
            if index < len(self._blocks):
                block = self._blocks[index]
                if isinstance(block, TextBlock):
                    block.text += text
        elif delta_type == "input_json_delta":
            fragment = _string(delta, "partial_json")
            if index < len(self._fragments):
                self._fragments[index] += fragment

    def _on_block_stop(self, payload: dict[str, Any]) -> None:
        index = _block_index(payload)
        if index is None or index >= len(self._blocks):
            return
        block = self._blocks[index]
        if not isinstance(block, ToolUseBlock):
            return

        fragment = self._fragments[index]
        if not fragment:
            # Complete call with no arguments
            block.input = {}
            return
        try:
            parsed = json.loads(fragment)
        except json.JSONDecodeError as e:
            logger.warning("Corrupt tool input for %s (JSON parse failed: %s)", block.name, e)
            block.input = None
            return
        if not isinstance(parsed, dict):
            logger.warning(
                "Corrupt tool input for %s (expected object, got %s)",
                block.name,
                type(parsed).__name__,
            )
            block.input = None
            return
        block.input = parsed

    def _on_message_delta(self, payload: dict[str, Any]) -> None:
        stop_reason = StopReason.parse(_object(payload, "delta").get("stop_reason"))
        if stop_reason is not None:
            self._stop_reason = stop_reason
        usage = _object(payload, "usage")
        if "output_tokens" in usage:
            self._usage.output_tokens = _token_count(usage, "output_tokens")

    def _on_message_stop(self, payload: dict[str, Any]) -> None:
        self._message_complete = True

    def _on_error(self, payload: dict[str, Any]) -> None:
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message")
        else:
            # Some proxies send the error as a bare string
            message = error
        raise StreamDecodeError(f"stream error: {message or 'unknown stream error'}")

    _HANDLERS: dict[str, Callable[[StreamDecoder, dict[str, Any]], None]] = {
        "message_start": _on_message_start,
        "content_block_start": _on_block_start,
        "content_block_delta": _on_block_delta,
        "content_block_stop": _on_block_stop,
        "message_delta": _on_message_delta,
        "message_stop": _on_message_stop,
        "error": _on_error,
    }


def decode_stream(
    lines: Iterable[str],
    on_text: Callable[[str], None] | None = None,
) -> DecodedResponse:
    """Decode a complete, already-split stream in one call."""
    decoder = StreamDecoder(on_text=on_text)
    decoder.feed(lines)
    return decoder.finish()
