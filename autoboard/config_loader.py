"""
Configuration loader for Autoboard.
Merges built-in defaults with a per-board .autoboard/config.yaml override.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import yaml
from pydantic import BaseModel, Field

from autoboard.models import AutomaticSafeguards


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class EngineConfig(BaseModel):
    poll_interval_seconds: float = 60.0
    startup_delay_seconds: float = 1.0
    history_limit: int = Field(default=10, ge=1)
    timezone: str = "UTC"


class SafeguardDefaults(BaseModel):
    cooldown_minutes: int = 5
    daily_cap: int = 50
    prevent_loops: bool = True


class RoutingConfig(BaseModel):
    model: str = "gemini/gemini-3-flash-preview"
    temperature: float = 0.4
    max_tokens: int = 4096


class GenerationConfig(BaseModel):
    default_card_count: int = 5
    tag_colors: list[str] = Field(
        default_factory=lambda: ["blue", "green", "purple", "orange", "pink", "cyan"]
    )


class AutoboardConfig(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    safeguards: SafeguardDefaults = Field(default_factory=SafeguardDefaults)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.engine.timezone)

    def default_safeguards(self) -> AutomaticSafeguards:
        return AutomaticSafeguards(**self.safeguards.model_dump())


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(board_dir: Path | None = None, config_file: Path | None = None) -> AutoboardConfig:
    """
    Load config by merging:
      1. Built-in defaults (autoboard/config.yaml)
      2. Board-level overrides (<board_dir>/.autoboard/config.yaml)
      3. An explicit override file, if given
      4. AUTOBOARD_TIMEZONE from the environment
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    candidates: list[Path] = []
    if board_dir:
        candidates.append(board_dir / ".autoboard" / "config.yaml")
    if config_file:
        candidates.append(config_file)

    for path in candidates:
        if path.exists():
            with open(path, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    tz = os.environ.get("AUTOBOARD_TIMEZONE")
    if tz:
        base = _deep_merge(base, {"engine": {"timezone": tz}})

    return AutoboardConfig(**base)


def validate_api_keys() -> dict[str, bool]:
    """Check which API keys are available."""
    return {
        "ANTHROPIC_API_KEY": bool(os.environ.get("ANTHROPIC_API_KEY")),
        "OPENAI_API_KEY":    bool(os.environ.get("OPENAI_API_KEY")),
        "GOOGLE_API_KEY":    bool(os.environ.get("GOOGLE_API_KEY")),
        "GEMINI_API_KEY":    bool(os.environ.get("GEMINI_API_KEY")),
    }
