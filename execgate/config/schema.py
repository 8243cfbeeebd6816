"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SafeBinProfileConfig(BaseModel):
    """Argument constraints for one safe bin."""
    max_positional: int | None = None
    allowed_flags: list[str] | None = None
    denied_flags: list[str] = Field(default_factory=list)
    pattern_args: int = 0  # leading args baked into allow-always patterns


class ExecHostConfig(BaseModel):
    """Remote exec host (companion process) configuration."""
    prefer: bool = False  # Route runs through the exec host when set
    enforced: bool = False  # Never fall back to local execution
    fallback_allowed: bool = True
    url: str = "http://127.0.0.1:18791"
    token: str = ""
    connect_timeout_seconds: float = 5.0


class ExecToolConfig(BaseModel):
    """Command execution configuration."""
    security: Literal["deny", "allowlist", "full"] = "deny"
    ask: Literal["off", "on-miss", "always"] = "on-miss"
    ask_fallback: Literal["deny", "allowlist", "full"] = "deny"
    safe_bins: list[str] | None = None  # None = built-in stdin-only bins
    safe_bin_profiles: dict[str, SafeBinProfileConfig] = Field(default_factory=dict)
    trusted_dirs: list[str] | None = None  # None = /bin, /usr/bin
    workspace_root: str | None = None  # Approved runs must stay under this root
    timeout_seconds: int = 300  # 5 minutes default
    max_output_bytes: int = 200_000  # 200KB
    approval_timeout_seconds: int = 120  # 2 minutes to approve
    approvals_path: str = "~/.execgate/exec-approvals.json"
    host: ExecHostConfig = Field(default_factory=ExecHostConfig)

    @property
    def approvals_file(self) -> Path:
        return Path(self.approvals_path).expanduser()


class ToolsConfig(BaseModel):
    """Tools configuration."""
    exec: ExecToolConfig = Field(default_factory=ExecToolConfig)


class Config(BaseSettings):
    """Root configuration for execgate."""
    tools: ToolsConfig = Field(default_factory=ToolsConfig)

    model_config = SettingsConfigDict(env_prefix="EXECGATE_", env_nested_delimiter="__")
