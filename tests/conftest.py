"""Shared fixtures: isolated settings and a scripted Messages API sender."""

from collections.abc import Callable

import pytest

from forge.api.errors import ApiError
from forge.api.models import Message, StopReason, TextBlock, ToolUseBlock, Usage
from forge.api.stream import DecodedResponse
from forge.config import Settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep the developer's real environment out of every test."""
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    for name in ("MODEL", "MAX_TOKENS", "VERBOSE", "COLOR", "LOG_LEVEL", "TRANSCRIPT_ENABLED"):
        monkeypatch.delenv(f"FORGE_{name}", raising=False)
    monkeypatch.delenv("NO_COLOR", raising=False)


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, ANTHROPIC_API_KEY="sk-test")


# ---------------------------------------------------------------------------
# Scripted sender
# ---------------------------------------------------------------------------


def text_response(text: str, stop: StopReason = StopReason.END_TURN) -> DecodedResponse:
    return DecodedResponse(content=[TextBlock(text=text)], stop_reason=stop, usage=Usage(10, 5))


def tool_response(*calls: tuple[str, str, dict | None], text: str = "") -> DecodedResponse:
    """A ToolUse response issuing ``(id, name, input)`` calls."""
    content = [TextBlock(text=text)] if text else []
    content.extend(ToolUseBlock(id=i, name=n, input=inp) for i, n, inp in calls)
    return DecodedResponse(content=content, stop_reason=StopReason.TOOL_USE, usage=Usage(20, 8))


class ScriptedSender:
    """Returns (or raises) scripted replies in order and records what was sent.

    Each recorded request is a wire-form snapshot of the conversation, so
    later mutation by the runner does not change it.
    """

    def __init__(self, replies: list[DecodedResponse | Exception | Callable[[], DecodedResponse]]):
        self.replies = list(replies)
        self.requests: list[list[dict]] = []
        self.tools: list[list[dict]] = []
        self.system_prompts: list[str] = []

    async def send_message(self, messages: list[Message], tools, system_prompt, on_text=None):
        self.requests.append([m.to_wire() for m in messages])
        self.tools.append(tools)
        self.system_prompts.append(system_prompt)
        if not self.replies:
            raise ApiError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply()
        if on_text is not None:
            for block in reply.content:
                if isinstance(block, TextBlock) and block.text:
                    on_text(block.text)
        return reply
