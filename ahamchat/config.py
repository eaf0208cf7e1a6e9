import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "AHAM_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = (
    "openai_api_key",
    "anthropic_api_key",
    "google_api_key",
    "groq_api_key",
    "azure_api_key",
    "deepseek_api_key",
    "fireworks_api_key",
    "xai_api_key",
    "openai_compatible_api_key",
    "tavily_api_key",
    "serper_api_key",
    "jina_api_key",
)

logger = logging.getLogger("uvicorn.error")


class AppSettings(BaseModel):
    # Provider credentials
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    google_api_key: Optional[str] = None
    groq_api_key: Optional[str] = None
    ollama_base_url: Optional[str] = None
    azure_api_key: Optional[str] = None
    azure_resource_name: Optional[str] = None
    deepseek_api_key: Optional[str] = None
    fireworks_api_key: Optional[str] = None
    xai_api_key: Optional[str] = None
    openai_compatible_api_key: Optional[str] = None
    openai_compatible_base_url: Optional[str] = None

    # Tool credentials
    tavily_api_key: Optional[str] = None
    serper_api_key: Optional[str] = None
    jina_api_key: Optional[str] = None

    # Orchestration knobs
    max_tool_steps: int = 5
    tool_timeout_s: float = 15.0
    provider_timeout_s: float = 60.0
    default_context_window: int = 128000
    reserved_output_tokens: int = 30000
    related_questions: bool = True
    save_chat_history: bool = True

    database_path: str = "aham_chat.db"
    settings_store_path: str = "aham_settings.json"
    host: str = "0.0.0.0"
    port: int = 8000

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


_ENV_NAMES = {
    "openai_api_key": "OPENAI_API_KEY",
    "openai_base_url": "OPENAI_BASE_URL",
    "anthropic_api_key": "ANTHROPIC_API_KEY",
    "google_api_key": "GOOGLE_GENERATIVE_AI_API_KEY",
    "groq_api_key": "GROQ_API_KEY",
    "ollama_base_url": "OLLAMA_BASE_URL",
    "azure_api_key": "AZURE_API_KEY",
    "azure_resource_name": "AZURE_RESOURCE_NAME",
    "deepseek_api_key": "DEEPSEEK_API_KEY",
    "fireworks_api_key": "FIREWORKS_API_KEY",
    "xai_api_key": "XAI_API_KEY",
    "openai_compatible_api_key": "OPENAI_COMPATIBLE_API_KEY",
    "openai_compatible_base_url": "OPENAI_COMPATIBLE_API_BASE_URL",
    "tavily_api_key": "TAVILY_API_KEY",
    "serper_api_key": "SERPER_API_KEY",
    "jina_api_key": "JINA_API_KEY",
    "max_tool_steps": "MAX_TOOL_STEPS",
    "tool_timeout_s": "TOOL_TIMEOUT_S",
    "provider_timeout_s": "PROVIDER_TIMEOUT_S",
    "default_context_window": "DEFAULT_CONTEXT_WINDOW",
    "reserved_output_tokens": "RESERVED_OUTPUT_TOKENS",
    "related_questions": "ENABLE_RELATED_QUESTIONS",
    "save_chat_history": "ENABLE_SAVE_CHAT_HISTORY",
    "database_path": "DATABASE_PATH",
    "settings_store_path": "SETTINGS_STORE_PATH",
    "host": "HOST",
    "port": "PORT",
}
_INT_FIELDS = {"max_tool_steps", "default_context_window", "reserved_output_tokens", "port"}
_FLOAT_FIELDS = {"tool_timeout_s", "provider_timeout_s"}
_BOOL_FIELDS = {"related_questions", "save_chat_history"}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {field: os.getenv(name) for field, name in _ENV_NAMES.items()}
    cleaned: Dict[str, Any] = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in list(cleaned):
        if key in _INT_FIELDS:
            cleaned[key] = int(cleaned[key])
        elif key in _FLOAT_FIELDS:
            cleaned[key] = float(cleaned[key])
        elif key in _BOOL_FIELDS:
            cleaned[key] = str(cleaned[key]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception as exc:
            logger.warning("Ignoring unreadable config file %s: %s", path, exc)
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    # Secrets left blank in config.json fall back to the environment.
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
