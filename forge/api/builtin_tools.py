"""Built-in tools for the coding agent: read_file, list_files, edit_file,
bash, code_search and registry.

Every tool validates its raw input into a typed pydantic argument record
first, then returns a ToolOutput.  Failures the model should react to
(missing files, non-unique matches, timeouts, denied commands) are error
outputs, never exceptions.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import signal
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from forge.api.errors import ToolInputError
from forge.api.safety import check_command
from forge.api.tools import ToolDispatcher, ToolOutput
from forge.config import Settings

logger = logging.getLogger(__name__)

# Limits
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB
_BINARY_SNIFF_BYTES = 8192
_MAX_OUTPUT_BYTES = 100 * 1024  # 100KB
_DEFAULT_BASH_TIMEOUT = 120  # seconds
_MAX_LIST_ENTRIES = 1000
_MAX_LIST_DEPTH = 20
_MAX_SEARCH_MATCHES = 50

SKIP_DIRS = frozenset({".git", "node_modules", "target", ".venv", "vendor", ".devenv"})


# ---------------------------------------------------------------------------
# Argument records
# ---------------------------------------------------------------------------


class _ToolArgs(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ReadFileArgs(_ToolArgs):
    path: str


class ListFilesArgs(_ToolArgs):
    path: str = "."
    recursive: bool = False


class EditFileArgs(_ToolArgs):
    path: str
    old_str: str
    new_str: str


class BashArgs(_ToolArgs):
    command: str
    cwd: str | None = None


class CodeSearchArgs(_ToolArgs):
    pattern: str
    path: str = "."
    file_type: str | None = None
    case_sensitive: bool = False


def parse_args(model: type[_ToolArgs], raw: dict[str, Any]) -> Any:
    """Validate raw tool input into ``model``.

    Raises:
        ToolInputError: naming the first offending field.
    """
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "input"
        if first["type"] == "missing":
            raise ToolInputError(f"{field} is required") from e
        raise ToolInputError(f"{field}: {first['msg']}") from e


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _os_error(path: str, e: OSError) -> str:
    return f"{path}: {e.strerror or e}"


def truncate_utf8(text: str, max_bytes: int) -> tuple[str, bool]:
    """Cut ``text`` to at most ``max_bytes`` UTF-8 bytes without splitting a character."""
    data = text.encode("utf-8")
    if len(data) <= max_bytes:
        return text, False
    return data[:max_bytes].decode("utf-8", errors="ignore"), True


def _check_file_size(target: Path) -> str | None:
    size = target.stat().st_size
    if size > _MAX_FILE_SIZE:
        return f"File too large: {size} bytes (limit: {_MAX_FILE_SIZE} bytes)"
    return None


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


def _read_file_sync(path: str) -> ToolOutput:
    target = Path(path)
    try:
        if target.is_dir():
            return ToolOutput.error(f"{path}: is a directory")
        too_large = _check_file_size(target)
        if too_large:
            return ToolOutput.error(too_large)
        data = target.read_bytes()
    except OSError as e:
        return ToolOutput.error(_os_error(path, e))

    if b"\x00" in data[:_BINARY_SNIFF_BYTES]:
        return ToolOutput.error(f"{path}: binary file (contains NUL bytes)")
    try:
        content = data.decode("utf-8")
    except UnicodeDecodeError:
        return ToolOutput.error(f"{path}: file is not valid UTF-8")

    if not content:
        return ToolOutput.ok("(empty file)")
    lines = [line.removesuffix("\r") for line in content.split("\n")]
    if lines[-1] == "":
        lines.pop()
    return ToolOutput.ok("\n".join(f"{n}: {line}" for n, line in enumerate(lines, 1)))


async def read_file_tool(args: dict[str, Any]) -> ToolOutput:
    """Read a text file and return it with 1-based line numbers.

    Rejects files over 1MB, files with a NUL byte in the first 8KB and
    files that are not valid UTF-8.
    """
    try:
        parsed = parse_args(ReadFileArgs, args)
    except ToolInputError as e:
        return ToolOutput.error(str(e))
    return await asyncio.to_thread(_read_file_sync, parsed.path)


def _walk(base: Path, directory: Path, recursive: bool, depth: int, entries: list[str]) -> None:
    try:
        children = sorted(os.scandir(directory), key=lambda entry: entry.name)
    except OSError as e:
        logger.debug("list_files: cannot read %s: %s", directory, e)
        return

    for entry in children:
        rel = Path(entry.path).relative_to(base).as_posix()
        try:
            is_dir = entry.is_dir()
        except OSError:
            is_dir = False
        if not is_dir:
            entries.append(rel)
            continue
        if entry.name in SKIP_DIRS:
            continue
        entries.append(f"{rel}/")
        if recursive and depth + 1 < _MAX_LIST_DEPTH and not entry.is_symlink():
            _walk(base, Path(entry.path), recursive, depth + 1, entries)


def _list_files_sync(path: str, recursive: bool) -> ToolOutput:
    base = Path(path)
    if not base.exists():
        return ToolOutput.error(f"{path}: No such file or directory")
    if not base.is_dir():
        return ToolOutput.error(f"{path}: not a directory")

    entries: list[str] = []
    _walk(base, base, recursive, 0, entries)
    entries.sort()

    if not entries:
        return ToolOutput.ok("(empty directory)")
    total = len(entries)
    if total > _MAX_LIST_ENTRIES:
        shown = "\n".join(entries[:_MAX_LIST_ENTRIES])
        return ToolOutput.ok(
            f"{shown}\n... (truncated, showing {_MAX_LIST_ENTRIES} of {total} entries)"
        )
    return ToolOutput.ok("\n".join(entries))


async def list_files_tool(args: dict[str, Any]) -> ToolOutput:
    """List a directory (optionally recursively), skipping VCS and build dirs."""
    try:
        parsed = parse_args(ListFilesArgs, args)
    except ToolInputError as e:
        return ToolOutput.error(str(e))
    return await asyncio.to_thread(_list_files_sync, parsed.path, parsed.recursive)


def _edit_file_sync(path: str, old_str: str, new_str: str) -> ToolOutput:
    target = Path(path)

    if not target.exists() and not old_str:
        try:
            if str(target.parent) not in ("", "."):
                target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(new_str.encode("utf-8"))
        except OSError as e:
            return ToolOutput.error(_os_error(path, e))
        return ToolOutput.ok(f"Created {path}")

    try:
        too_large = _check_file_size(target)
        if too_large:
            return ToolOutput.error(too_large)
        content = target.read_bytes().decode("utf-8")
    except OSError as e:
        return ToolOutput.error(_os_error(path, e))
    except UnicodeDecodeError:
        return ToolOutput.error(f"{path}: file is not valid UTF-8")

    if not old_str:
        new_content = content + new_str
    else:
        count = content.count(old_str)
        if count == 0:
            return ToolOutput.error("old_str not found")
        if count > 1:
            return ToolOutput.error(f"old_str found {count} times, must be unique")
        new_content = content.replace(old_str, new_str, 1)

    try:
        target.write_bytes(new_content.encode("utf-8"))
    except OSError as e:
        return ToolOutput.error(_os_error(path, e))
    return ToolOutput.ok("OK")


async def edit_file_tool(args: dict[str, Any]) -> ToolOutput:
    """Replace a unique occurrence of old_str with new_str.

    Empty old_str creates a missing file (with parent directories) or
    appends to an existing one.
    """
    try:
        parsed = parse_args(EditFileArgs, args)
    except ToolInputError as e:
        return ToolOutput.error(str(e))
    if parsed.old_str == parsed.new_str:
        return ToolOutput.error("old_str and new_str must differ")
    return await asyncio.to_thread(_edit_file_sync, parsed.path, parsed.old_str, parsed.new_str)


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def _exit_status(returncode: int) -> str:
    if returncode < 0:
        return f"signal: {-returncode}"
    return f"exit status: {returncode}"


async def bash_tool(args: dict[str, Any], *, timeout: int = _DEFAULT_BASH_TIMEOUT) -> ToolOutput:
    """Execute a bash command and capture combined stdout + stderr.

    Args:
        args: Raw tool input with ``command`` and optional ``cwd``
        timeout: Wall-clock limit in seconds; the process group is killed on expiry

    Returns:
        Stripped output on exit status 0, otherwise an error starting with
        "Command failed".  Output is capped at 100KB.
    """
    try:
        parsed = parse_args(BashArgs, args)
    except ToolInputError as e:
        return ToolOutput.error(str(e))

    denied = check_command(parsed.command)
    if denied:
        logger.warning("Denied bash command (%s): %s", denied, parsed.command)
        return ToolOutput.error(f"Command denied: matches destructive pattern ({denied})")

    try:
        proc = await asyncio.create_subprocess_exec(
            "bash",
            "-c",
            parsed.command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=parsed.cwd,
            start_new_session=True,
        )
    except OSError as e:
        return ToolOutput.error(f"exec failed: {e}")

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill_process_group(proc)
        await proc.wait()
        return ToolOutput.error(f"Command timed out after {timeout}s")

    output = stdout.decode("utf-8", errors="replace") + stderr.decode("utf-8", errors="replace")
    output, truncated = truncate_utf8(output, _MAX_OUTPUT_BYTES)
    if truncated:
        output += "\n... (output truncated)"

    if proc.returncode != 0:
        return ToolOutput.error(f"Command failed ({_exit_status(proc.returncode)}): {output}")
    return ToolOutput.ok(output.strip() or "(no output)")


async def code_search_tool(args: dict[str, Any]) -> ToolOutput:
    """Search code with ripgrep; case-insensitive unless asked otherwise."""
    try:
        parsed = parse_args(CodeSearchArgs, args)
    except ToolInputError as e:
        return ToolOutput.error(str(e))
    if not parsed.pattern:
        return ToolOutput.error("pattern is required")

    rg = shutil.which("rg")
    if rg is None:
        return ToolOutput.error("rg failed: ripgrep (rg) not found on PATH")

    cmd = [rg, "--line-number", "--with-filename", "--color=never"]
    if not parsed.case_sensitive:
        cmd.append("--ignore-case")
    if parsed.file_type:
        cmd.extend(["--type", parsed.file_type])
    cmd.extend(["--", parsed.pattern, parsed.path])

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
    except OSError as e:
        return ToolOutput.error(f"rg failed: {e}")

    if proc.returncode == 1:
        return ToolOutput.ok("No matches found")
    if proc.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        return ToolOutput.error(f"search failed: {message}")

    result = stdout.decode("utf-8", errors="replace").strip()
    total_bytes = len(result.encode("utf-8"))
    if total_bytes > _MAX_OUTPUT_BYTES:
        shown, _ = truncate_utf8(result, _MAX_OUTPUT_BYTES)
        return ToolOutput.ok(f"{shown}\n... (output truncated, {total_bytes} bytes total)")

    lines = result.split("\n")
    if len(lines) > _MAX_SEARCH_MATCHES:
        shown = "\n".join(lines[:_MAX_SEARCH_MATCHES])
        return ToolOutput.ok(
            f"{shown}\n... (showing {_MAX_SEARCH_MATCHES} of {len(lines)} matches)"
        )
    return ToolOutput.ok(result)


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read a file's contents with line numbers",
    "properties": {
        "path": {"type": "string", "description": "Relative file path"},
    },
    "required": ["path"],
}

_LIST_FILES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "List files and directories. Defaults to current directory.",
    "properties": {
        "path": {"type": "string", "description": "Optional path to list"},
        "recursive": {"type": "boolean", "description": "List subdirectories too (default: false)"},
    },
    "required": [],
}

_EDIT_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Replace old_str with new_str in a file. Creates file if missing.",
    "properties": {
        "path": {"type": "string", "description": "The path to the file"},
        "old_str": {"type": "string", "description": "Text to search for - must match exactly once"},
        "new_str": {"type": "string", "description": "Text to replace old_str with"},
    },
    "required": ["path", "old_str", "new_str"],
}

_BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Execute a bash command and return its output",
    "properties": {
        "command": {"type": "string", "description": "The bash command to execute"},
        "cwd": {"type": "string", "description": "Optional working directory"},
    },
    "required": ["command"],
}

_CODE_SEARCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Search for code patterns using ripgrep (rg)",
    "properties": {
        "pattern": {"type": "string", "description": "The search pattern or regex"},
        "path": {"type": "string", "description": "Optional path to search in"},
        "file_type": {"type": "string", "description": "File type filter (e.g. 'py', 'js')"},
        "case_sensitive": {"type": "boolean", "description": "Case sensitive (default: false)"},
    },
    "required": ["pattern"],
}

_REGISTRY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "List all available tools and their descriptions",
    "properties": {},
    "required": [],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(dispatcher: ToolDispatcher, settings: Settings) -> None:
    """Register the built-in tools with the dispatcher.

    Creates closure wrappers that inject the bash timeout from settings
    and give the registry tool a view of the dispatcher itself.
    """
    bash_timeout = settings.bash_timeout

    async def _bash(args: dict[str, Any]) -> ToolOutput:
        return await bash_tool(args, timeout=bash_timeout)

    async def _registry(args: dict[str, Any]) -> ToolOutput:
        return ToolOutput.ok(json.dumps(dispatcher.describe(), indent=2))

    dispatcher.register("read_file", read_file_tool, _READ_FILE_SCHEMA)
    dispatcher.register("list_files", list_files_tool, _LIST_FILES_SCHEMA)
    dispatcher.register("bash", _bash, _BASH_SCHEMA)
    dispatcher.register("edit_file", edit_file_tool, _EDIT_FILE_SCHEMA)
    dispatcher.register("code_search", code_search_tool, _CODE_SEARCH_SCHEMA)
    dispatcher.register("registry", _registry, _REGISTRY_SCHEMA)


def build_dispatcher(settings: Settings) -> ToolDispatcher:
    """A dispatcher with every built-in tool registered."""
    dispatcher = ToolDispatcher()
    register_builtin_tools(dispatcher, settings)
    return dispatcher
