"""YAML configuration loading with Pydantic validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, Field


def _default_data_dir() -> Path:
    """Return the default data directory: ~/.artiflow"""
    return Path.home() / ".artiflow"


def _default_fallback_series() -> List[Dict[str, Any]]:
    return [
        {"category": "Sample A", "value": 100},
        {"category": "Sample B", "value": 150},
        {"category": "Sample C", "value": 120},
    ]


class FallbackChartConfig(BaseModel):
    """Placeholder series used when a chart payload has no usable data."""
    x_key: str = "category"
    y_key: str = "value"
    data: List[Dict[str, Any]] = Field(default_factory=_default_fallback_series)


class EngineConfig(BaseModel):
    """Tuning knobs for the extraction engine and the persistence layer."""
    min_code_lines: int = 5
    min_code_chars: int = 200
    fallback_chart: FallbackChartConfig = Field(default_factory=FallbackChartConfig)
    title_max_length: int = 50
    default_chat_title: str = "New Chat"


class LLMConfig(BaseModel):
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o"
    api_key: str = "sk-placeholder"
    max_tokens: int = 4096
    temperature: float = 0.7
    max_retries: int = 3
    retry_base_delay: float = 1.0   # seconds
    retry_max_delay: float = 60.0   # seconds


class DatabaseConfig(BaseModel):
    path: str = str(_default_data_dir() / "artiflow_data.db")


class LogConfig(BaseModel):
    dir: str = str(_default_data_dir() / "logs")


class AppConfig(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    log: LogConfig = Field(default_factory=LogConfig)


_config: AppConfig | None = None


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load config from YAML file. Falls back to defaults if file not found."""
    global _config
    if _config is not None:
        return _config

    paths_to_try = []
    if config_path:
        paths_to_try.append(Path(config_path))
    paths_to_try.extend([
        Path("config.yaml"),
        Path("config.yml"),
        _default_data_dir() / "config.yaml",
        _default_data_dir() / "config.yml",
    ])

    for p in paths_to_try:
        if p.exists():
            with open(p) as f:
                data = yaml.safe_load(f) or {}
            _config = AppConfig(**data)
            return _config

    _config = AppConfig()
    return _config


def get_config() -> AppConfig:
    """Get the current config, loading defaults if needed."""
    if _config is None:
        return load_config()
    return _config


def reset_config() -> None:
    """Reset config (for testing)."""
    global _config
    _config = None
