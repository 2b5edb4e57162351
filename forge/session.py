"""JSONL session transcript.

Appends every user and assistant message to
``{transcript_dir}/{date}-{uuid}/full.jsonl`` as it happens, each line
chained to the previous one through ``parentUuid``.  At the end of the
session writes ``prompt.txt`` (first user prompt) and ``context.md``
(a summary of the tool calls made).

Write failures are logged and never interrupt the session.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any

from forge.api.models import Message, ToolUseBlock, Usage

logger = logging.getLogger(__name__)


def _package_version() -> str:
    try:
        return version("forge-agent")
    except PackageNotFoundError:
        return "0.0.0"


def _timestamp(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%SZ")


class Transcript:
    """Append-only record of one interactive session."""

    def __init__(self, root: str | Path, cwd: str, model: str) -> None:
        now = datetime.now(timezone.utc)
        self.session_id = f"{now:%Y-%m-%d}-{uuid.uuid4()}"
        self.dir = Path(root) / self.session_id
        self.cwd = cwd
        self.model = model
        self.start_time = _timestamp(now)
        self._parent_uuid: str | None = None
        self._first_prompt: str | None = None
        self._version = _package_version()

    @property
    def path(self) -> Path:
        return self.dir / "full.jsonl"

    def append(self, message: Message, usage: Usage | None = None) -> None:
        """Append one message as a transcript line."""
        if self._first_prompt is None and message.is_exchange_start():
            self._first_prompt = message.text()

        line_uuid = str(uuid.uuid4())
        body: dict[str, Any] = message.to_wire()
        if usage is not None:
            body["usage"] = usage.to_dict()
        line = {
            "type": message.role.value,
            "sessionId": self.session_id,
            "uuid": line_uuid,
            "parentUuid": self._parent_uuid,
            "timestamp": _timestamp(),
            "cwd": self.cwd,
            "version": self._version,
            "message": body,
        }
        self._parent_uuid = line_uuid
        try:
            self.dir.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(line, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning("Transcript write error: %s", e)

    def write_supporting_files(self, conversation: list[Message]) -> None:
        """Write prompt.txt and context.md at session end."""
        try:
            self.dir.mkdir(parents=True, exist_ok=True)
            if self._first_prompt is not None:
                (self.dir / "prompt.txt").write_text(self._first_prompt, encoding="utf-8")
            (self.dir / "context.md").write_text(self._render_context(conversation), encoding="utf-8")
        except OSError as e:
            logger.warning("Transcript supporting files error: %s", e)

    def _render_context(self, conversation: list[Message]) -> str:
        lines = [
            f"# Session {self.session_id}",
            "",
            f"- Model: {self.model}",
            f"- Started: {self.start_time}",
            f"- CWD: {self.cwd}",
            "",
            "## Key Actions",
            "",
        ]
        for message in conversation:
            for block in message.content:
                if isinstance(block, ToolUseBlock):
                    lines.append(f"- **{block.name}**: {_first_string_arg(block)}")
        return "\n".join(lines) + "\n"


def _first_string_arg(block: ToolUseBlock) -> str:
    for value in (block.input or {}).values():
        return value if isinstance(value, str) else ""
    return ""
