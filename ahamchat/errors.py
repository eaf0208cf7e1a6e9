from typing import Any, Dict, Optional, Tuple

import httpx


class ConfigurationError(Exception):
    """Bad or incomplete model configuration, raised before any stream opens."""

    def __init__(
        self,
        error: str,
        details: str,
        status_code: int = 400,
        provider: Optional[str] = None,
        provider_id: Optional[str] = None,
    ):
        super().__init__(details)
        self.error = error
        self.details = details
        self.status_code = status_code
        self.provider = provider
        self.provider_id = provider_id

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": self.error,
            "details": self.details,
            "provider": self.provider,
            "providerId": self.provider_id,
        }


class ToolExecutionError(Exception):
    pass


class StreamingError(Exception):
    def __init__(self, kind: str, message: str, original: Optional[BaseException] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.original = original


class PersistenceError(Exception):
    pass


class AnnotationError(Exception):
    pass


AUTH_MESSAGE = "Invalid API key for the model provider. Please check your credentials."
NOT_FOUND_MESSAGE = "Model endpoint not found. Please verify your base URL and model name."
CONNECT_MESSAGE = "Failed to connect to the model endpoint. Please check your API URL and network connection."


def classify_stream_error(exc: BaseException) -> Tuple[str, str]:
    """Map a provider/network failure to (kind, human readable message)."""
    if isinstance(exc, StreamingError):
        return exc.kind, exc.message
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code if exc.response is not None else None
        if status in (401, 403):
            return "authentication", AUTH_MESSAGE
        if status == 404:
            return "not_found", NOT_FOUND_MESSAGE
    if isinstance(exc, httpx.RequestError):
        return "connectivity", CONNECT_MESSAGE
    text = str(exc) or exc.__class__.__name__
    lowered = text.lower()
    if "401" in lowered or "unauthorized" in lowered or "invalid api key" in lowered:
        return "authentication", AUTH_MESSAGE
    if "404" in lowered or "not found" in lowered or "does not exist" in lowered:
        return "not_found", NOT_FOUND_MESSAGE
    if "fetch" in lowered or "connect" in lowered or "timed out" in lowered:
        return "connectivity", CONNECT_MESSAGE
    return "generic", text
