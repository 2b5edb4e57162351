"""Context window management -- keeps the conversation under a byte budget.

Two layers:
  Layer 1: drop whole oldest exchanges, cutting only at a user text
           message so no tool_result loses its tool_use.
  Layer 2: when one exchange alone is too big, shorten large text and
           tool_result blocks in place.

Also home to recover_conversation(), which repairs the tail of the
conversation after a failed API call.

Sizes are bytes of each message's compact JSON wire form, the same
encoding the client sends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from forge.api.models import Message, Role, TextBlock, ToolResultBlock, message_size

logger = logging.getLogger(__name__)

# Blocks at or below this many bytes are never truncated
MIN_TRUNCATABLE_BYTES = 10_000
# A truncated block keeps at least this many bytes
MIN_KEPT_BYTES = 1_000
TRUNCATION_MARKER = "\n... (truncated to fit context window)"


@dataclass
class TrimResult:
    """What trim_conversation() removed or shortened."""

    dropped_messages: int = 0
    dropped_bytes: int = 0
    truncated_blocks: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.dropped_messages or self.truncated_blocks)


def conversation_bytes(conversation: list[Message]) -> int:
    return sum(message_size(m) for m in conversation)


def exchange_boundaries(conversation: list[Message]) -> list[int]:
    """Indices of user messages that open a fresh exchange."""
    return [i for i, m in enumerate(conversation) if m.is_exchange_start()]


def trim_conversation(conversation: list[Message], max_bytes: int) -> TrimResult:
    """Fit the conversation into ``max_bytes`` in place.

    Drops the shortest prefix of whole exchanges that brings the total
    under budget.  If even the newest exchange alone is too big, keeps
    only that exchange and falls back to truncate_oversized_blocks().
    Message 0 is never dropped on its own: every cut lands on a later
    exchange boundary.
    """
    result = TrimResult()
    sizes = [message_size(m) for m in conversation]
    total = sum(sizes)
    if total <= max_bytes:
        return result

    boundaries = exchange_boundaries(conversation)
    if len(boundaries) < 2:
        # Nothing droppable: one exchange, or only tool-result continuations
        result.truncated_blocks = truncate_oversized_blocks(conversation, max_bytes)
        return result

    for cut in boundaries[1:]:
        prefix = sum(sizes[:cut])
        if total - prefix <= max_bytes:
            logger.warning("Trimmed %d messages (%d bytes) to fit context", cut, prefix)
            del conversation[:cut]
            result.dropped_messages = cut
            result.dropped_bytes = prefix
            return result

    cut = boundaries[-1]
    prefix = sum(sizes[:cut])
    logger.warning("Trimmed to last exchange (%d messages dropped)", cut)
    del conversation[:cut]
    result.dropped_messages = cut
    result.dropped_bytes = prefix
    result.truncated_blocks = truncate_oversized_blocks(conversation, max_bytes)
    return result


def _floor_char_boundary(data: bytes, index: int) -> int:
    """Largest index <= ``index`` that does not split a UTF-8 sequence."""
    if index >= len(data):
        return len(data)
    while index > 0 and (data[index] & 0xC0) == 0x80:
        index -= 1
    return index


def truncate_oversized_blocks(conversation: list[Message], max_bytes: int) -> int:
    """Shorten large text/tool_result blocks until the total fits.

    Each eligible block gives up at most what is still over budget and
    keeps at least MIN_KEPT_BYTES.  The cut snaps back to a character
    boundary and the block gets TRUNCATION_MARKER appended.

    Returns the number of blocks truncated.
    """
    total = conversation_bytes(conversation)
    if total <= max_bytes:
        return 0

    remaining = total - max_bytes
    truncated = 0
    blocks = (block for message in conversation for block in message.content)
    for block in blocks:
        if remaining <= 0:
            break
        if isinstance(block, ToolResultBlock):
            text = block.content
        elif isinstance(block, TextBlock):
            text = block.text
        else:
            continue

        data = text.encode("utf-8")
        if len(data) <= MIN_TRUNCATABLE_BYTES:
            continue

        keep = max(len(data) - remaining, MIN_KEPT_BYTES)
        end = _floor_char_boundary(data, keep)
        remaining = max(remaining - (len(data) - end), 0)
        shortened = data[:end].decode("utf-8") + TRUNCATION_MARKER

        if isinstance(block, ToolResultBlock):
            block.content = shortened
        else:
            block.text = shortened
        truncated += 1

    if truncated:
        logger.warning("Truncated %d oversized content blocks to fit context", truncated)
    return truncated


def recover_conversation(conversation: list[Message]) -> int:
    """Restore a sendable conversation after a failed model call.

    A trailing user message is removed.  If it carried tool results, the
    assistant message whose tool calls it answered goes too, since those
    calls can no longer be answered.  A trailing assistant message is
    left alone.

    Returns the number of messages removed.
    """
    if not conversation or conversation[-1].role != Role.USER:
        return 0

    removed = conversation.pop()
    if (
        removed.is_tool_result_message()
        and conversation
        and conversation[-1].role == Role.ASSISTANT
    ):
        conversation.pop()
        return 2
    return 1
