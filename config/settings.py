"""
Configuration loader for the template runner.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"          # "anthropic" | "openai"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 1024
    api_key: str = ""


@dataclass
class EngineConfig:
    max_chain_depth: int = 16            # templates per chain, including the first
    default_tools: list[str] = field(default_factory=list)
    max_tool_rounds: int = 8             # model tool-call rounds per input


@dataclass
class Settings:
    app_name: str = "TemplateRunner"
    debug: bool = False
    llm: LLMConfig = field(default_factory=LLMConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    tools: list[dict[str, Any]] = field(default_factory=list)
    templates: dict[str, str] = field(default_factory=dict)    # name → "module:function"


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "TEMPLATE_RUNNER_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "llm" in raw:
            llm = raw["llm"]
            settings.llm = LLMConfig(
                provider=llm.get("provider", "anthropic"),
                model=llm.get("model", "claude-sonnet-4-20250514"),
                temperature=llm.get("temperature", 0.7),
                max_tokens=llm.get("max_tokens", 1024),
                api_key=llm.get("api_key", ""),
            )

        if "engine" in raw:
            eng = raw["engine"]
            settings.engine = EngineConfig(
                max_chain_depth=eng.get("max_chain_depth", 16),
                default_tools=list(eng.get("default_tools", [])),
                max_tool_rounds=eng.get("max_tool_rounds", 8),
            )

        settings.tools = raw.get("tools", []) or []
        settings.templates = raw.get("templates", {}) or {}

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
