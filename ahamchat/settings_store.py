import json
import logging
from pathlib import Path
from typing import Any, Dict

from .schemas import OpenAICompatibleSettings

SETTINGS_KEY = "aham-ai-settings"

logger = logging.getLogger("uvicorn.error")


class SettingsStore:
    """JSON-file key-value store holding the user's OpenAI-compatible endpoint."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except Exception as exc:
            logger.warning("Failed to load settings from %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2))

    def _blob(self) -> Dict[str, Any]:
        blob = self._read().get(SETTINGS_KEY)
        return blob if isinstance(blob, dict) else {}

    def get_openai_compatible_settings(self) -> OpenAICompatibleSettings:
        stored = self._blob().get("openaiCompatible")
        if not isinstance(stored, dict):
            return OpenAICompatibleSettings()
        return OpenAICompatibleSettings(
            apiKey=stored.get("apiKey") or "",
            baseURL=stored.get("baseURL") or "",
            model=stored.get("model") or "",
            enabled=bool(stored.get("enabled") or False),
        )

    def save_openai_compatible_settings(self, settings: OpenAICompatibleSettings) -> None:
        data = self._read()
        blob = data.get(SETTINGS_KEY) if isinstance(data.get(SETTINGS_KEY), dict) else {}
        blob["openaiCompatible"] = settings.model_dump(by_alias=True)
        data[SETTINGS_KEY] = blob
        self._write(data)

    def clear_openai_compatible_settings(self) -> None:
        data = self._read()
        blob = data.get(SETTINGS_KEY)
        if not isinstance(blob, dict) or "openaiCompatible" not in blob:
            return
        blob.pop("openaiCompatible", None)
        data[SETTINGS_KEY] = blob
        self._write(data)
