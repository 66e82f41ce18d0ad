"""Settings via pydantic-settings with TILLER_ env prefix.

Credentials use validation_alias to read the same unprefixed env vars
(ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) other Anthropic tooling uses,
so a single .env file drives everything.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TILLER_", env_file=".env")

    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 4096
    system_prompt: str = "You are a helpful assistant."

    # Extended thinking
    thinking_mode: Literal["off", "adaptive", "manual"] = "off"
    thinking_budget: int = 10000  # budget_tokens for manual mode (min 1024)

    # Direct API settings
    max_turns: int = 25  # Max model turns per run; 0 disables the guard
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    workspace_dir: str = "/tmp/tiller-workspace"

    # Compaction
    compaction_enabled: bool = True
    compaction_threshold: int = 30000  # estimated tokens
    compaction_mode: Literal["prune", "summarize", "hybrid"] = "hybrid"
    prune_keep_recent: int = 10
    summarize_keep_recent: int = 6
    background_model: str = Field(
        default="claude-sonnet-4-5-20250514",
        validation_alias="TILLER_BACKGROUND_MODEL",
    )

    @model_validator(mode="after")
    def _validate_thinking(self) -> "Settings":
        if self.thinking_mode == "manual":
            if self.thinking_budget < 1024:
                raise ValueError("thinking_budget must be >= 1024 (API minimum)")
            if self.thinking_budget >= self.max_tokens:
                raise ValueError(
                    f"thinking_budget ({self.thinking_budget}) must be < "
                    f"max_tokens ({self.max_tokens}). Increase max_tokens."
                )
        return self

    @property
    def turn_limit(self) -> int | None:
        """max_turns as the loop expects it (None = unbounded)."""
        return self.max_turns if self.max_turns > 0 else None
