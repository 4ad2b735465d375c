"""Configuration management for the OpenCode controller."""

from pathlib import Path
from typing import Any, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_OPENCODE_PATH = Path("~/.opencode/bin/opencode")


class ServerSettings(BaseSettings):
    """OpenCode server settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="OPENCODE_", extra="ignore")

    port: Optional[int] = Field(
        default=None,
        description="Force a specific port for `opencode serve` instead of allocating one",
    )
    path: Optional[str] = Field(
        default=None,
        description="Path to the opencode binary (default: ~/.opencode/bin/opencode)",
    )

    @field_validator("port", mode="before")
    @classmethod
    def ignore_invalid_port(cls, v: Any) -> Optional[int]:
        """Treat empty, non-numeric and non-positive values as unset."""
        if v is None:
            return None
        try:
            port = int(str(v).strip())
        except ValueError:
            return None
        return port if port > 0 else None

    @property
    def opencode_binary(self) -> str:
        """Resolve the binary to launch."""
        if self.path:
            return self.path
        return str(DEFAULT_OPENCODE_PATH.expanduser())


def get_settings() -> ServerSettings:
    """Get server settings, loading from environment."""
    return ServerSettings()
