from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str
    provider_base_url: str | None


@dataclass
class AppConfig:
    provider_name: str
    model: str
    max_tokens: int
    temperature: float | None
    top_p: float | None
    context_message_size: int
    prompt_caching: bool
    enable_time_reminder: bool
    max_tool_steps: int
    log_level: str
    log_consumers: list | None


def load_json_config(config_path: Path | None = None) -> dict:
    config_path = config_path or Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _to_optional_float(value: object) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        provider_name=config.get("Provider", "anthropic").strip().lower(),
        model=config.get("Model", "claude-sonnet-4-5-20250929"),
        max_tokens=int(config.get("MaxTokens", 8192)),
        temperature=_to_optional_float(config.get("Temperature")),
        top_p=_to_optional_float(config.get("TopP")),
        context_message_size=int(config.get("ContextMessageSize", 64)),
        prompt_caching=_to_bool(config.get("PromptCaching", False), default=False),
        enable_time_reminder=_to_bool(config.get("EnableTimeReminder", True), default=True),
        max_tool_steps=int(config.get("MaxToolSteps", 16)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    load_dotenv()
    prefix = "OPENAI" if provider_name == "openai" else "ANTHROPIC"
    provider_env_var = f"{prefix}_API_KEY"

    return RuntimeEnv(
        provider_api_key=os.environ.get(provider_env_var, ""),
        provider_env_var=provider_env_var,
        provider_base_url=os.environ.get(f"{prefix}_BASE_URL") or None,
    )
