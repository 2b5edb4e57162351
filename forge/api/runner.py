"""Agent runner -- executes conversational turns via the Anthropic API.

Owns the conversation and drives the per-turn state machine:

    AwaitingInput -> Sending -> (ToolUse -> Dispatching -> Sending)*
                  -> EndTurn | MaxTokens

Before every model call the conversation is fitted to the byte budget.
Tool calls run one at a time, in the order the model issued them, and
their results go back as a single user message.  A failed model call
or the iteration ceiling rolls the conversation back to a sendable
state so the next user turn starts clean.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from forge.api.context import TrimResult, recover_conversation, trim_conversation
from forge.api.errors import AgentError
from forge.api.models import (
    ContentBlock,
    Message,
    Role,
    StopReason,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Usage,
)
from forge.api.stream import DecodedResponse
from forge.api.tools import ToolDispatcher
from forge.config import Settings

if TYPE_CHECKING:
    from forge.session import Transcript

logger = logging.getLogger(__name__)

MAX_TOKENS_PLACEHOLDER = "(response truncated: max_tokens reached)"
EMPTY_RESPONSE_PLACEHOLDER = "(empty response)"


class MessageSender(Protocol):
    """Anything that can send a conversation and return a decoded reply."""

    async def send_message(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
        system_prompt: str,
        on_text: Any = None,
    ) -> DecodedResponse: ...


class TurnObserver:
    """Hooks for surfacing turn progress.  Every method is a no-op here."""

    def on_text(self, text: str) -> None:
        pass

    def on_response(self, response: DecodedResponse) -> None:
        pass

    def on_tool_call(self, block: ToolUseBlock) -> None:
        pass

    def on_tool_result(self, block: ToolUseBlock, result: ToolResultBlock) -> None:
        pass

    def on_context_trimmed(self, result: TrimResult) -> None:
        pass

    def on_warning(self, message: str) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


@dataclass
class TurnOutcome:
    """How one user turn ended."""

    stop_reason: StopReason | None = None
    text: str = ""
    error: str | None = None
    tool_iterations: int = 0
    usage: Usage = field(default_factory=Usage)

    @property
    def ok(self) -> bool:
        return self.error is None


def strip_corrupt_tool_uses(message: Message) -> int:
    """Remove tool_use blocks whose input never arrived intact.

    Such calls (cut off mid-arguments by max_tokens) can never be answered
    validly.  An assistant message left empty gets a short text block so
    it stays sendable.  Returns the number of blocks removed.
    """
    kept: list[ContentBlock] = [
        b for b in message.content if not (isinstance(b, ToolUseBlock) and b.input is None)
    ]
    removed = len(message.content) - len(kept)
    if removed and not kept:
        kept = [TextBlock(text=MAX_TOKENS_PLACEHOLDER)]
    message.content = kept
    return removed


class AgentRunner:
    """Runs conversational turns against a MessageSender with tool dispatch."""

    def __init__(
        self,
        client: MessageSender,
        dispatcher: ToolDispatcher,
        settings: Settings,
        system_prompt: str,
        observer: TurnObserver | None = None,
        transcript: Transcript | None = None,
    ) -> None:
        self._client = client
        self._dispatcher = dispatcher
        self._settings = settings
        self._system_prompt = system_prompt
        self._observer = observer or TurnObserver()
        self._transcript = transcript
        self.conversation: list[Message] = []
        self.usage = Usage()

    async def run_turn(self, user_text: str) -> TurnOutcome:
        """Execute a single user turn through to EndTurn, MaxTokens or failure.

        Never raises for API, stream or tool failures: they are reported in
        the returned TurnOutcome and the conversation is left sendable.
        """
        outcome = TurnOutcome()
        user_message = Message.user_text(user_text)
        self.conversation.append(user_message)
        self._record(user_message)

        tools = self._dispatcher.tool_definitions()
        max_iterations = self._settings.max_tool_iterations

        while True:
            if outcome.tool_iterations >= max_iterations:
                message = f"Tool loop hit {max_iterations} iterations, breaking"
                logger.warning("Tool loop hit %d iterations, breaking", max_iterations)
                self._observer.on_warning(message)
                self.recover()
                outcome.error = message
                return outcome

            trim = trim_conversation(self.conversation, self._settings.max_conversation_bytes)
            if trim.changed:
                self._observer.on_context_trimmed(trim)

            logger.debug("Sending message, conversation len: %d", len(self.conversation))
            try:
                response = await self._client.send_message(
                    self.conversation,
                    tools,
                    self._system_prompt,
                    on_text=self._observer.on_text,
                )
            except (AgentError, httpx.HTTPError) as e:
                logger.error("API call error: %s", e)
                self._observer.on_error(str(e))
                self.recover()
                outcome.error = str(e)
                return outcome

            self._observer.on_response(response)
            outcome.usage.add(response.usage)
            self.usage.add(response.usage)
            outcome.stop_reason = response.stop_reason

            content = response.content
            if not content:
                # The API rejects an assistant message with no content blocks
                logger.warning(
                    "Empty assistant response (stop_reason=%s)", response.stop_reason.value
                )
                if response.stop_reason == StopReason.MAX_TOKENS:
                    content = [TextBlock(text=MAX_TOKENS_PLACEHOLDER)]
                else:
                    content = [TextBlock(text=EMPTY_RESPONSE_PLACEHOLDER)]
            assistant = Message(role=Role.ASSISTANT, content=content)
            self.conversation.append(assistant)

            if response.stop_reason != StopReason.TOOL_USE:
                if response.stop_reason == StopReason.MAX_TOKENS:
                    self._observer.on_warning("Response truncated (max_tokens reached)")
                    stripped = strip_corrupt_tool_uses(assistant)
                    if stripped:
                        logger.warning("Stripped %d incomplete tool_use blocks", stripped)
                self._record(assistant, response.usage)
                outcome.text = assistant.text()
                return outcome

            self._record(assistant, response.usage)
            results = await self._dispatch_tools(assistant)
            if not results:
                outcome.text = assistant.text()
                return outcome

            outcome.tool_iterations += 1
            logger.debug(
                "Sending %d tool results (iteration %d)", len(results), outcome.tool_iterations
            )
            tool_message = Message(role=Role.USER, content=list(results))
            self.conversation.append(tool_message)
            self._record(tool_message)

    async def _dispatch_tools(self, assistant: Message) -> list[ToolResultBlock]:
        """Run every tool_use block in order, one at a time."""
        results: list[ToolResultBlock] = []
        for block in assistant.tool_uses():
            self._observer.on_tool_call(block)
            result = await self._dispatcher.dispatch(block.name, block.input, block.id)
            self._observer.on_tool_result(block, result)
            results.append(result)
        return results

    def recover(self) -> int:
        """Drop a dangling trailing user message (and its orphaned tool calls)."""
        removed = recover_conversation(self.conversation)
        if removed:
            logger.info("Recovered conversation: removed %d trailing messages", removed)
        return removed

    def _record(self, message: Message, usage: Usage | None = None) -> None:
        if self._transcript is not None:
            self._transcript.append(message, usage)
