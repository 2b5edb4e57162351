"""Tool registry and dispatch.

ToolDispatcher maps a tool name to a Tool capability (schema + async
handler) and turns every call, whatever happens, into exactly one
ToolResultBlock.  Registration order is the order tools are advertised
to the model; it has no effect on dispatch.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from forge.api.models import ToolResultBlock

logger = logging.getLogger(__name__)

CORRUPT_INPUT_MESSAGE = "tool input was corrupt (JSON parse failed)"


@dataclass
class ToolOutput:
    """Outcome of one tool body: success text, or error text the model will see."""

    text: str
    is_error: bool = False

    @classmethod
    def ok(cls, text: str) -> ToolOutput:
        return cls(text)

    @classmethod
    def error(cls, text: str) -> ToolOutput:
        return cls(text, is_error=True)


ToolHandler = Callable[[dict[str, Any]], Awaitable[ToolOutput]]


@dataclass(frozen=True)
class Tool:
    """A registered tool: what the model is told, and what runs."""

    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler

    def definition(self) -> dict[str, Any]:
        """Tool definition in Anthropic API format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolDispatcher:
    """Registers tools and dispatches tool calls from the API."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, name: str, handler: ToolHandler, schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema.

        The schema's ``description`` is advertised as the tool description
        and stripped from the advertised input schema.
        """
        input_schema = {k: v for k, v in schema.items() if k != "description"}
        self._tools[name] = Tool(
            name=name,
            description=schema.get("description", ""),
            input_schema=input_schema,
            handler=handler,
        )

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    async def dispatch(
        self,
        name: str,
        tool_input: dict[str, Any] | None,
        tool_use_id: str,
    ) -> ToolResultBlock:
        """Run one tool call and wrap the outcome as a tool_result block.

        Never raises: an unknown tool, corrupt input and unexpected
        exceptions all come back as error results.
        """
        tool = self._tools.get(name)
        if tool is None:
            return ToolResultBlock(tool_use_id, f"tool '{name}' not found", is_error=True)
        if tool_input is None:
            logger.warning("Tool %s: corrupt input (null)", name)
            return ToolResultBlock(tool_use_id, CORRUPT_INPUT_MESSAGE, is_error=True)

        start_time = time.monotonic()
        try:
            output = await tool.handler(tool_input)
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            output = ToolOutput.error(f"Tool error: {e}")
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.debug(
            "Tool %s finished in %dms (%s, %d chars)",
            name,
            duration_ms,
            "error" if output.is_error else "ok",
            len(output.text),
        )

        return ToolResultBlock(
            tool_use_id=tool_use_id,
            content=output.text,
            is_error=True if output.is_error else None,
        )

    def tool_definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [tool.definition() for tool in self._tools.values()]

    def describe(self) -> list[dict[str, str]]:
        """Name and description of every registered tool."""
        return [{"name": t.name, "description": t.description} for t in self._tools.values()]
