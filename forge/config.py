"""Settings via pydantic-settings with FORGE_ env prefix.

The API key is read from the unprefixed ANTHROPIC_API_KEY variable so the
same environment works for every Anthropic client on the machine.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FORGE_", env_file=".env", extra="ignore")

    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")

    # LLM
    model: str = "claude-opus-4-6"
    max_tokens: int = 16384

    # Direct API settings
    api_base_url: str = "https://api.anthropic.com"
    api_version: str = "2023-06-01"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 300  # seconds

    # Agent loop
    max_conversation_bytes: int = 720_000  # ~180K tokens at ~4 chars/token
    max_tool_iterations: int = 50
    bash_timeout: int = 120  # seconds

    # Presentation
    log_level: str = "warning"
    verbose: bool = False
    color: bool | None = None  # None = auto-detect from the terminal

    # Transcript
    transcript_enabled: bool = False
    transcript_dir: str = ".forge/sessions"

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        for name in ("max_tokens", "max_conversation_bytes", "max_tool_iterations", "bash_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        return self
