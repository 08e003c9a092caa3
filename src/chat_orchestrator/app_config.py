from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from chat_orchestrator.errors import ConfigurationError
from chat_orchestrator.registry import ConflictPolicy
from chat_orchestrator.tokens import DEFAULT_ENCODING

_API_KEY_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


@dataclass
class RuntimeEnv:
    provider_api_key: str
    provider_env_var: str
    base_url: str | None
    model_location: str | None


@dataclass
class AppConfig:
    provider_name: str
    model: str
    endpoint: str
    max_context_tokens: int
    max_response_tokens: int
    max_prompt_tokens: int | None
    temperature: float
    top_p: float | None
    top_k: int | None
    prompt_prefix: str | None
    user_label: str
    model_label: str
    encoding: str
    snapshot_interval_seconds: float
    request_timeout_seconds: float | None
    conflict_policy: ConflictPolicy
    title_conversations: bool
    db_path: str
    user_id: str | None
    log_level: str
    log_consumers: list | None


def load_json_config(path: str | Path | None = None) -> dict:
    config_path = Path(path) if path is not None else Path.cwd() / "config.json"
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


def _optional_int(value: object) -> int | None:
    if value is None or str(value).strip() == "":
        return None
    return int(value)


def _optional_float(value: object) -> float | None:
    if value is None or str(value).strip() == "":
        return None
    return float(value)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def parse_app_config(config: dict) -> AppConfig:
    try:
        return AppConfig(
            provider_name=str(config.get("Provider", "openai")).strip().lower(),
            model=str(config.get("Model", "ggml-vicuna1.17b-q5_1.bin")),
            endpoint=str(config.get("Endpoint", "llama")),
            max_context_tokens=int(config.get("MaxContextTokens", 2048)),
            max_response_tokens=int(config.get("MaxResponseTokens", 1024)),
            max_prompt_tokens=_optional_int(config.get("MaxPromptTokens")),
            temperature=float(config.get("Temperature", 0.2)),
            top_p=_optional_float(config.get("TopP", 0.95)),
            top_k=_optional_int(config.get("TopK", 40)),
            prompt_prefix=_optional_str(config.get("PromptPrefix")),
            user_label=str(config.get("UserLabel", "User")),
            model_label=str(config.get("ModelLabel", "Assistant")),
            encoding=str(config.get("Encoding", DEFAULT_ENCODING)),
            snapshot_interval_seconds=float(config.get("SnapshotIntervalSeconds", 0.5)),
            request_timeout_seconds=_optional_float(config.get("RequestTimeoutSeconds")),
            conflict_policy=ConflictPolicy.parse(config.get("ConflictPolicy", "reject")),
            title_conversations=_to_bool(config.get("TitleConversations", True), default=True),
            db_path=str(config.get("DbPath", ".chat_orchestrator/conversations.db")),
            user_id=_optional_str(config.get("UserId")),
            log_level=str(config.get("LogLevel", "INFO")),
            log_consumers=config.get("LogConsumers"),
        )
    except (TypeError, ValueError) as ex:
        raise ConfigurationError(f"Invalid config.json value: {ex}") from ex


def resolve_runtime_env(provider_name: str) -> RuntimeEnv:
    provider_env_var = _API_KEY_VARS.get(provider_name, "OPENAI_API_KEY")
    return RuntimeEnv(
        provider_api_key=os.environ.get(provider_env_var, ""),
        provider_env_var=provider_env_var,
        base_url=_optional_str(os.environ.get("GPT_LLAMA_URL")),
        model_location=_optional_str(os.environ.get("GPT_LLAMA_LOCATION")),
    )
