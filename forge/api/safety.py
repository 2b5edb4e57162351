"""Destructive-command deny-list for the bash tool.

Commands are split into segments on shell control operators, newlines,
grouping parentheses and backticks.  Each segment has its compound-command
keywords and sudo-style wrappers stripped, then its base command and
arguments are checked.  ``bash -c`` and ``eval`` bodies are checked
recursively.  Text that shlex cannot parse is rescanned with its quoting
removed rather than waved through.  A few
patterns (fork bombs, raw redirects onto block devices) are matched
against the raw text because they do not survive tokenising.
"""

from __future__ import annotations

import re
import shlex

_SHELL_PUNCTUATION = ";&|()`\n"
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time", "exec", "doas"}
# Reserved words that can precede a simple command
_SHELL_KEYWORD_TOKENS = {"!", "{", "}", "if", "then", "elif", "else", "do", "while", "until"}
_SHELL_INTERPRETERS = {"sh", "bash", "dash", "zsh", "ksh"}
_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")

_FORK_BOMB_RE = re.compile(r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;?\s*:")
_DEVICE_REDIRECT_RE = re.compile(r">\s*/dev/(sd|hd|vd|xvd|nvme|mmcblk|disk)\w*")
_HOME_TARGETS = {"~", "~/", "$HOME", "$HOME/", "${HOME}", "${HOME}/"}
_MAX_NESTING = 4


def _tokenize(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators and newlines."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=_SHELL_PUNCTUATION)
    lexer.whitespace_split = True
    lexer.whitespace = " \t\r"
    lexer.commenters = ""
    return list(lexer)


def _is_separator(token: str) -> bool:
    return all(ch in _SHELL_PUNCTUATION for ch in token)


def _split_segments(command: str) -> list[list[str]]:
    segments: list[list[str]] = []
    current: list[str] = []
    for token in _tokenize(command):
        if _is_separator(token):
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _strip_wrappers(tokens: list[str]) -> list[str]:
    """Drop keywords, sudo-style wrappers and leading VAR=value assignments."""
    idx = 0
    while idx < len(tokens):
        token = tokens[idx]
        if (
            token in _SHELL_KEYWORD_TOKENS
            or token in _SHELL_WRAPPER_TOKENS
            or (_ASSIGNMENT_RE.match(token) and "/" not in token)
        ):
            idx += 1
            continue
        break
    return tokens[idx:]


def _is_recursive_flag(arg: str) -> bool:
    if arg == "--recursive":
        return True
    return arg.startswith("-") and not arg.startswith("--") and ("r" in arg or "R" in arg)


def _is_root_level(target: str) -> bool:
    """True for '/', '/*', the home directory and top-level directories such as '/etc'."""
    if target in _HOME_TARGETS:
        return True
    if not target.startswith("/"):
        return False
    parts = [p for p in target.split("/") if p and p != "."]
    return len(parts) <= 1


def _check_segment(tokens: list[str], depth: int) -> str | None:
    tokens = _strip_wrappers(tokens)
    if not tokens:
        return None
    base = tokens[0].rsplit("/", 1)[-1]
    args = tokens[1:]
    targets = [a for a in args if not a.startswith("-")]
    recursive = any(_is_recursive_flag(a) for a in args)

    if base == "rm" and recursive and any(_is_root_level(t) for t in targets):
        return "recursive delete of a root-level path"
    if base.startswith("mkfs") or base in ("mke2fs", "wipefs"):
        return "filesystem formatting"
    if base == "dd" and any(a.startswith("of=/dev/") for a in args):
        return "raw device write"
    if (
        base in ("chmod", "chown", "chgrp")
        and recursive
        and any(_is_root_level(t) for t in targets)
    ):
        return "recursive permission change on a root-level path"

    if depth < _MAX_NESTING:
        if base in _SHELL_INTERPRETERS and "-c" in args[:-1]:
            return _check(args[args.index("-c") + 1], depth + 1)
        if base == "eval" and args:
            return _check(" ".join(args), depth + 1)
    return None


def _check(command: str, depth: int) -> str | None:
    compact = command.replace("\\\n", " ").strip()
    if _FORK_BOMB_RE.search(compact):
        return "fork bomb"
    if _DEVICE_REDIRECT_RE.search(compact):
        return "raw device write"
    try:
        segments = _split_segments(compact)
    except ValueError:
        # Unbalanced quotes or a trailing escape: rescan with quoting removed
        # so every word is treated as a possible command
        unquoted = re.sub(r"[\"'\\]", " ", compact)
        segments = _split_segments(unquoted)
    for segment in segments:
        reason = _check_segment(segment, depth)
        if reason:
            return reason
    return None


def check_command(command: str) -> str | None:
    """Return a description of the destructive pattern ``command`` matches, or None."""
    return _check(command, 0)
