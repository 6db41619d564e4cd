"""
hotgraft Configuration

Settings for the reload engine, loaded from the environment
(prefixed with HOTGRAFT_, e.g. HOTGRAFT_CLEANUP_DELAY_SECONDS=0.5)
and/or a JSON file.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """Logging levels for hotgraft."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ReloadConfig(BaseSettings):
    """Configuration for plugin reloads."""

    # Finalizing
    cleanup_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Grace delay before deleting the previous module's files",
    )
    gc_max_passes: int = Field(
        default=50,
        ge=1,
        description="Upper bound on forced collection passes after an unload",
    )
    symbols_suffix: str = Field(
        default=".map",
        description="Suffix of the debug-symbol file that accompanies a module build",
    )
    delete_old_modules: bool = Field(
        default=True,
        description="Delete the previous module build after a successful reload",
    )
    remove_bytecode_cache: bool = Field(
        default=True,
        description="Also delete the previous module's cached bytecode",
    )

    # Loading
    module_prefix: str = Field(
        default="_hotgraft_plugin",
        description="Prefix of the private module names used for isolated loads",
    )

    # Walking
    system_modules: List[str] = Field(
        default_factory=lambda: ["hotgraft", "structlog", "numpy", "pydantic", "watchdog"],
        description="Top-level packages whose objects are never walked for commands",
    )

    # Bookkeeping
    history_size: int = Field(default=50, ge=1)

    # Logging
    log_level: LogLevel = LogLevel.INFO
    json_logs: bool = False

    model_config = {
        "env_prefix": "HOTGRAFT_",
        "case_sensitive": False,
    }

    @field_validator("symbols_suffix")
    @classmethod
    def ensure_dot(cls, v: str) -> str:
        """Ensure the suffix starts with a dot."""
        if v and not v.startswith("."):
            return f".{v}"
        return v

    @classmethod
    def from_file(cls, config_path: Path) -> "ReloadConfig":
        """Load configuration from a JSON file."""
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            config_data = json.load(f)

        return cls(**config_data)

    def to_file(self, config_path: Path) -> None:
        """Save configuration to a JSON file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)


# Global configuration instance (lazy loaded)
_config: Optional[ReloadConfig] = None


def get_config() -> ReloadConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = ReloadConfig()
    return _config


def set_config(config: ReloadConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None
