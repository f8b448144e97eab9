import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "CHATCORE_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_MASK = "********"


class ModelProviderConfig(BaseModel):
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model_id: str = "gemini-3-flash-preview"
    api_key: Optional[str] = None
    timeout_s: float = 60.0
    default_temperature: float = 0.7
    dashboard_temperature: float = 0.0

    model_config = {"protected_namespaces": ()}


class DocumentSearchConfig(BaseModel):
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_s: float = 30.0


class ResilienceConfig(BaseModel):
    retry_delay_s: float = 1.0
    breaker_threshold: int = 3
    breaker_cooldown_s: float = 60.0


class MemoryConfig(BaseModel):
    recall_limit: int = 5
    recall_min_score: float = 0.1
    client_context_limit: int = 5
    client_context_min_score: float = 0.3
    summary_interval: int = 10


class AppSettings(BaseModel):
    model: ModelProviderConfig = Field(default_factory=ModelProviderConfig)
    document_search: DocumentSearchConfig = Field(default_factory=DocumentSearchConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    database_path: str = "chatcore.db"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    chat_rate_limit: int = 10
    stream_chunk_size: int = 50
    recent_message_limit: int = 10
    assistant_name: str = "Diii"
    shutdown_drain_timeout_s: float = 30.0

    def masked(self) -> dict:
        data = self.model_dump()
        if data["model"].get("api_key"):
            data["model"]["api_key"] = SECRET_MASK
        if data["document_search"].get("api_key"):
            data["document_search"]["api_key"] = SECRET_MASK
        return data

    model_config = {"protected_namespaces": ()}


# Env var -> (section, field, cast); a None section is a top-level field.
_ENV_FIELDS: Dict[str, tuple] = {
    "GOOGLE_AI_API_KEY": ("model", "api_key", str),
    "CHAT_MODEL_ID": ("model", "model_id", str),
    "CHAT_MODEL_BASE_URL": ("model", "base_url", str),
    "DOCUMENT_SEARCH_URL": ("document_search", "base_url", str),
    "DOCUMENT_SEARCH_API_KEY": ("document_search", "api_key", str),
    "SUMMARY_INTERVAL": ("memory", "summary_interval", int),
    "DATABASE_PATH": (None, "database_path", str),
    "HOST": (None, "host", str),
    "PORT": (None, "port", int),
    "LOG_LEVEL": (None, "log_level", str),
    "CHAT_RATE_LIMIT": (None, "chat_rate_limit", int),
}


def _load_from_env() -> dict:
    load_dotenv()
    cleaned: Dict[str, Any] = {}
    for env_name, (section, field, cast) in _ENV_FIELDS.items():
        value = os.getenv(env_name)
        if value in (None, ""):
            continue
        if section is None:
            cleaned[field] = cast(value)
        else:
            cleaned.setdefault(section, {})[field] = cast(value)
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge(low: Dict[str, Any], high: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(low)
    for key, value in high.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except json.JSONDecodeError:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = _merge(file_data, env_data)
    else:
        merged = _merge(env_data, file_data)
    model = merged.get("model") or {}
    env_key = (env_data.get("model") or {}).get("api_key")
    if not model.get("api_key") and env_key:
        merged["model"] = {**model, "api_key": env_key}
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(json.dumps(settings.model_dump(), indent=2))
