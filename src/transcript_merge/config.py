"""Paths, defaults, and environment detection."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _xdg_data_home() -> Path:
    return Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))


def _xdg_config_home() -> Path:
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


ENV_FILE_TEMPLATE = """\
# transcript-merge settings
# This file is sourced by tm before the configuration is resolved.
#
# Backend that receives new turns: claude (default) or cursor
# TM_PROVIDER=claude

# Model passed to the Cursor backend
# TM_CURSOR_MODEL=gpt-5

# History page size and streaming flush window (seconds)
# TM_PAGE_SIZE=20
# TM_STREAM_DEBOUNCE=0.1
"""

PROVIDERS = ("claude", "cursor")

# Cursor reports long model ids; the chat client uses the short names.
MODEL_ALIASES = {
    "gpt-5": "gpt-5",
    "claude-4-sonnet": "sonnet-4",
    "sonnet-4": "sonnet-4",
    "claude-4-opus": "opus-4.1",
    "opus-4.1": "opus-4.1",
}

PERMISSION_MODES = ("default", "acceptEdits", "bypassPermissions", "plan")


def normalize_model(model_id: str) -> str:
    return MODEL_ALIASES.get(model_id, model_id)


def _default_tools_settings() -> dict:
    return {"allowedTools": [], "disallowedTools": [], "skipPermissions": False}


@dataclass
class Config:
    """Runtime configuration, resolved from env vars and defaults."""

    # Persisted transcript snapshots and drafts
    state_dir: Path = field(default_factory=lambda: _xdg_data_home() / "transcript-merge")

    # Env file for settings
    env_file: Path = field(default_factory=lambda: _xdg_config_home() / "transcript-merge" / "env")

    # Backend selection
    provider: str = field(default_factory=lambda: os.environ.get("TM_PROVIDER", "claude"))
    cursor_model: str = field(
        default_factory=lambda: normalize_model(os.environ.get("TM_CURSOR_MODEL", "gpt-5"))
    )
    permission_mode: str = "default"
    tools_settings: dict = field(default_factory=_default_tools_settings)

    # Project the chat runs against
    project_name: str = "default"
    project_path: str | None = None

    # Transcript engine settings
    page_size: int = field(default_factory=lambda: int(os.environ.get("TM_PAGE_SIZE", "20")))
    stream_debounce: float = field(
        default_factory=lambda: float(os.environ.get("TM_STREAM_DEBOUNCE", "0.1"))
    )  # seconds
    load_more_threshold: int = 100  # px from the top that triggers backfill

    def __post_init__(self) -> None:
        if self.provider not in PROVIDERS:
            raise ValueError(f"Unknown provider: {self.provider!r}. Use 'claude' or 'cursor'.")
        if self.permission_mode not in PERMISSION_MODES:
            raise ValueError(f"Unknown permission mode: {self.permission_mode!r}")

    @property
    def kv_path(self) -> Path:
        return self.state_dir / "state.json"

    def next_permission_mode(self) -> str:
        """Cycle to the next permission mode and return it."""
        index = PERMISSION_MODES.index(self.permission_mode)
        self.permission_mode = PERMISSION_MODES[(index + 1) % len(PERMISSION_MODES)]
        return self.permission_mode

    def ensure_state_dir(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def load_env_file(self) -> None:
        """Load settings from the env file into os.environ (if not already set)."""
        if not self.env_file.exists():
            return
        for line in self.env_file.read_text().splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            # Don't overwrite keys already in the environment
            if key and key not in os.environ:
                os.environ[key] = value

    def ensure_env_file(self) -> bool:
        """Create the env file from template if it doesn't exist. Returns True if created."""
        if self.env_file.exists():
            return False
        self.env_file.parent.mkdir(parents=True, exist_ok=True)
        self.env_file.write_text(ENV_FILE_TEMPLATE)
        self.env_file.chmod(0o600)
        return True
