from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from gpt_cli.models import ModelIdentity, SamplingParams


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str


@dataclass
class AppConfig:
    provider_name: str
    model: str
    token_limit: int | None
    max_tokens: int
    temperature: float | None
    top_p: float | None
    persona: str
    stream: bool
    save: bool
    cache_dir: str | None
    api_key: str | None
    log_level: str
    log_consumers: list | None

    def model_identity(self) -> ModelIdentity:
        return ModelIdentity.for_name(self.model, self.token_limit)

    def sampling(self) -> SamplingParams:
        return SamplingParams(temperature=self.temperature, top_p=self.top_p)


DEFAULT_CONFIG: dict = {
    "Provider": "openai",
    "Model": "gpt-3.5-turbo",
    "Persona": "joi",
    "Stream": True,
    "Save": True,
    "ApiKey": "",
    "LogLevel": "INFO",
}


def load_json_config(user_config_file: Path | None = None) -> dict:
    """Read config.json from the working directory, else from the user config dir."""
    candidates = [Path.cwd() / "config.json"]
    if user_config_file is not None:
        candidates.append(user_config_file)
    for config_path in candidates:
        if config_path.exists():
            with open(config_path) as f:
                return json.load(f)
    return {}


def save_default_config(config_file: Path) -> Path:
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w") as f:
        json.dump(DEFAULT_CONFIG, f, indent=2)
    return config_file


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


def _to_optional_int(value: object) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        provider_name=str(config.get("Provider", "openai")).strip().lower(),
        model=config.get("Model", "gpt-3.5-turbo"),
        token_limit=_to_optional_int(config.get("TokenLimit")),
        max_tokens=int(config.get("MaxTokens", 1024)),
        temperature=_to_optional_float(config.get("Temperature")),
        top_p=_to_optional_float(config.get("TopP")),
        persona=str(config.get("Persona", "joi")),
        stream=_to_bool(config.get("Stream", True), default=True),
        save=_to_bool(config.get("Save", True), default=True),
        cache_dir=str(config.get("CacheDir", "")).strip() or None,
        api_key=str(config.get("ApiKey", "")).strip() or None,
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env(provider_name: str, config_api_key: str | None = None) -> RuntimeEnv:
    if provider_name == "anthropic":
        provider_env_var = "ANTHROPIC_API_KEY"
    else:
        provider_env_var = "OPENAI_API_KEY"

    return RuntimeEnv(
        provider_api_key=os.environ.get(provider_env_var, "") or config_api_key or "",
        provider_env_var=provider_env_var,
    )
