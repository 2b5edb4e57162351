"""Terminal presentation for the agent loop.

The only place that knows about colour.  DisplayConfig is built once at
startup and handed to Display, which renders turn progress through rich
consoles: model text on stdout, status lines on stderr.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from typing import IO

from rich.console import Console
from rich.markup import escape

from forge.api.context import TrimResult
from forge.api.models import TextBlock, ToolResultBlock, ToolUseBlock, Usage, to_json
from forge.api.runner import TurnObserver
from forge.api.stream import DecodedResponse
from forge.config import Settings

_RESULT_PREVIEW_CHARS = 200


@dataclass(frozen=True)
class DisplayConfig:
    """Presentation settings resolved at startup."""

    color: bool = True
    verbose: bool = False

    @classmethod
    def from_settings(cls, settings: Settings, stream: IO[str] | None = None) -> DisplayConfig:
        """Resolve auto colour: on for a terminal unless NO_COLOR is set."""
        color = settings.color
        if color is None:
            stream = stream or sys.stdout
            color = stream.isatty() and "NO_COLOR" not in os.environ
        return cls(color=color, verbose=settings.verbose)


def format_tool_call(block: ToolUseBlock, verbose: bool = False) -> str:
    """One-line description of a tool call, with arguments when verbose."""
    if verbose:
        return f"{block.name}({to_json(block.input)})"
    return block.name


def format_tool_result(result: ToolResultBlock, verbose: bool = False) -> tuple[str, str]:
    """(label, summary) for a tool result.

    Errors and verbose mode show the first 200 characters; otherwise only
    the length is shown.
    """
    label = "error" if result.is_error else "result"
    if result.is_error or verbose:
        return label, result.content[:_RESULT_PREVIEW_CHARS]
    return label, f"{len(result.content)} chars"


def format_usage(usage: Usage) -> str:
    """Compact token usage footer, e.g. '1.2K in / 340 out'."""
    def _fmt(n: int) -> str:
        return f"{n / 1000:.1f}K" if n >= 1000 else str(n)

    return f"{_fmt(usage.input_tokens)} in / {_fmt(usage.output_tokens)} out"


class Display(TurnObserver):
    """Renders turn progress to the terminal."""

    def __init__(
        self,
        config: DisplayConfig,
        out: Console | None = None,
        err: Console | None = None,
    ) -> None:
        self.config = config
        color_system = "auto" if config.color else None
        self.out = out or Console(
            color_system=color_system,
            force_terminal=config.color or None,
            highlight=False,
            soft_wrap=True,
        )
        self.err = err or Console(
            stderr=True,
            color_system=color_system,
            force_terminal=config.color or None,
            highlight=False,
            soft_wrap=True,
        )

    # ------------------------------------------------------------------
    # Session chrome
    # ------------------------------------------------------------------

    def banner(self) -> None:
        self.out.print("Chat with Claude (type 'exit' or Ctrl-D to quit)")

    def prompt(self) -> str:
        """Read one line of user input.  Raises EOFError on Ctrl-D."""
        return self.out.input("[bright_blue]You[/]: ")

    def verbose(self, message: str) -> None:
        if self.config.verbose:
            self.err.print(f"[dim]\\[verbose][/] {escape(message)}")

    def usage(self, turn: Usage, total: Usage) -> None:
        if self.config.verbose:
            self.err.print(
                f"[dim]\\[usage] turn {format_usage(turn)}, session {format_usage(total)}[/]"
            )

    # ------------------------------------------------------------------
    # TurnObserver
    # ------------------------------------------------------------------

    def on_text(self, text: str) -> None:
        self.out.print(text, end="", style="bright_yellow", markup=False)

    def on_response(self, response: DecodedResponse) -> None:
        if any(isinstance(b, TextBlock) and b.text for b in response.content):
            self.out.print()
        self.verbose(
            f"Received {len(response.content)} blocks, stop: {response.stop_reason.value}"
        )

    def on_tool_call(self, block: ToolUseBlock) -> None:
        if block.input is None:
            self.on_warning(f"Tool {block.name}: corrupt input (null)")
            return
        self.err.print(f"[bright_cyan]tool[/]: {escape(format_tool_call(block, self.config.verbose))}")

    def on_tool_result(self, block: ToolUseBlock, result: ToolResultBlock) -> None:
        label, summary = format_tool_result(result, self.config.verbose)
        colour = "bright_red" if result.is_error else "bright_green"
        self.err.print(f"[{colour}]{label}[/]: {escape(summary)}")

    def on_context_trimmed(self, result: TrimResult) -> None:
        if result.dropped_messages:
            self.err.print(
                f"[bright_yellow]\\[context][/] Trimmed {result.dropped_messages} messages "
                f"({result.dropped_bytes} bytes) to fit context"
            )
        if result.truncated_blocks:
            self.err.print(
                f"[bright_yellow]\\[context][/] Truncated {result.truncated_blocks} oversized blocks"
            )

    def on_warning(self, message: str) -> None:
        self.err.print(f"[bright_yellow]\\[warning][/] {escape(message)}")

    def on_error(self, message: str) -> None:
        self.err.print(f"[bright_red]Error[/]: {escape(message)}")
