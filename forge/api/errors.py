"""Exceptions that abort an agent turn.

Tool failures never appear here: they travel back to the model as
error tool results instead.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for failures that abort the current turn."""


class ApiError(AgentError):
    """Transport failure or non-success HTTP status from the Messages API."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @classmethod
    def from_status(cls, status_code: int, body: str) -> ApiError:
        return cls(f"API returned {status_code}: {body}", status_code=status_code, body=body)


class StreamDecodeError(AgentError):
    """The event stream could not be turned into a complete response."""


class MissingApiKeyError(AgentError):
    def __init__(self) -> None:
        super().__init__("ANTHROPIC_API_KEY not set")


class ToolInputError(ValueError):
    """Tool arguments failed validation at the tool's entry point."""
