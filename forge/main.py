"""Entry point -- parse options, build components, run the chat loop.

Interactive when stdin is a terminal (``You:`` prompt until ``exit`` or
Ctrl-D); otherwise the whole of stdin is sent as a single prompt.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import TextIO

import typer
from pydantic import ValidationError

from forge.api.builtin_tools import build_dispatcher
from forge.api.client import AnthropicClient
from forge.api.errors import AgentError
from forge.api.runner import AgentRunner
from forge.config import Settings
from forge.display import Display, DisplayConfig
from forge.prompt import build_system_prompt
from forge.session import Transcript

logger = logging.getLogger(__name__)

app = typer.Typer(help="Coding agent backed by the Anthropic Messages API", add_completion=False)


async def run_session(
    settings: Settings,
    display: Display,
    interactive: bool,
    stdin: TextIO | None = None,
) -> int:
    """Run a chat session and return the process exit code."""
    stdin = stdin or sys.stdin
    dispatcher = build_dispatcher(settings)
    system_prompt = build_system_prompt(bash_timeout=settings.bash_timeout)
    transcript = (
        Transcript(settings.transcript_dir, cwd=os.getcwd(), model=settings.model)
        if settings.transcript_enabled
        else None
    )
    display.verbose(f"Initialized {len(dispatcher)} tools")

    exit_code = 0
    async with AnthropicClient(settings) as client:
        runner = AgentRunner(
            client,
            dispatcher,
            settings,
            system_prompt,
            observer=display,
            transcript=transcript,
        )
        try:
            if interactive:
                display.banner()
                while True:
                    try:
                        line = display.prompt().strip()
                    except EOFError:
                        break
                    if not line:
                        continue
                    if line == "exit":
                        break
                    display.verbose(f"User: {line}")
                    outcome = await runner.run_turn(line)
                    display.usage(outcome.usage, runner.usage)
            else:
                prompt = stdin.read().strip()
                if prompt:
                    display.verbose(f"User: {prompt}")
                    outcome = await runner.run_turn(prompt)
                    display.usage(outcome.usage, runner.usage)
                    exit_code = 0 if outcome.ok else 1
        finally:
            if transcript is not None:
                transcript.write_supporting_files(runner.conversation)
    return exit_code


@app.command()
def main(
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging and tool details"),
    model: str = typer.Option("", "-m", "--model", help="Override model (default: claude-opus-4-6)"),
    max_tokens: int = typer.Option(0, "--max-tokens", help="Override max output tokens (default: 16384)"),
    no_color: bool = typer.Option(False, "--no-color", help="Disable coloured output"),
    transcript: bool = typer.Option(False, "--transcript", help="Write a JSONL session transcript"),
) -> None:
    """Chat with the coding agent."""
    overrides: dict[str, object] = {}
    if verbose:
        overrides["verbose"] = True
    if model:
        overrides["model"] = model
    if max_tokens:
        overrides["max_tokens"] = max_tokens
    if no_color:
        overrides["color"] = False
    if transcript:
        overrides["transcript_enabled"] = True

    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        typer.echo(f"Error: invalid settings: {e}", err=True)
        raise typer.Exit(code=2) from e

    logging.basicConfig(
        level=(
            logging.DEBUG
            if settings.verbose
            else getattr(logging, settings.log_level.upper(), logging.WARNING)
        ),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logger.info("Model: %s (max_tokens=%d)", settings.model, settings.max_tokens)

    display = Display(DisplayConfig.from_settings(settings))
    try:
        exit_code = asyncio.run(run_session(settings, display, interactive=sys.stdin.isatty()))
    except AgentError as e:
        display.on_error(str(e))
        raise typer.Exit(code=1) from e
    except KeyboardInterrupt:
        raise typer.Exit(code=130)
    raise typer.Exit(code=exit_code)


if __name__ == "__main__":
    app()
