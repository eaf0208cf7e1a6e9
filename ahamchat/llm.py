import json
import re
from typing import Any, AsyncGenerator, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from .schemas import ModelCapabilities


ALLOWED_ROLES = {"system", "user", "assistant", "tool"}
FINISH_REASONS = {
    "stop": "stop",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "length": "length",
    "content_filter": "content-filter",
}


def _parse_arguments(raw: str) -> Dict[str, Any]:
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ChatClient:
    """OpenAI-compatible chat completions client for one (base_url, api_key) pair."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        auth_header: str = "bearer",
        timeout: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.auth_header = auth_header
        # Tune connection limits so concurrent chats share a pool instead of opening
        # a new TCP connection per request.
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if not self.api_key:
            return headers
        if self.auth_header == "api-key":
            headers["api-key"] = self.api_key
        else:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def list_models(self) -> Dict[str, Any]:
        resp = await self.client.get(f"{self.base_url}/models", headers=self._headers())
        resp.raise_for_status()
        return resp.json()

    async def check_chat(self, model: str, timeout: float = 10.0) -> Tuple[bool, str]:
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": "ping"}],
            "max_tokens": 1,
            "stream": False,
        }
        try:
            resp = await self.client.post(
                f"{self.base_url}/chat/completions", json=payload, headers=self._headers(), timeout=timeout
            )
            resp.raise_for_status()
            return True, ""
        except httpx.HTTPStatusError as exc:
            return False, self._extract_error_detail(exc.response)
        except httpx.RequestError as exc:
            return False, str(exc)

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if role == "assistant" and msg.get("tool_calls"):
                sanitized.append({"role": role, "content": content or None, "tool_calls": msg["tool_calls"]})
                continue
            if role == "tool":
                if not msg.get("tool_call_id"):
                    continue
                if not isinstance(content, str):
                    content = json.dumps(content, ensure_ascii=True)
                sanitized.append({"role": role, "tool_call_id": msg["tool_call_id"], "content": content})
                continue
            if content is None:
                continue
            cleaned_content: Any
            if isinstance(content, str):
                if not content.strip():
                    continue
                cleaned_content = content
            elif isinstance(content, list):
                cleaned_items = [
                    item
                    for item in content
                    if isinstance(item, dict)
                    and item.get("type")
                    and (item.get("text") or item.get("image_url"))
                ]
                if not cleaned_items:
                    continue
                cleaned_content = cleaned_items
            else:
                cleaned_content = json.dumps(content, ensure_ascii=True)
            sanitized.append({"role": role, "content": cleaned_content})
        return sanitized

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    def _build_payload(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        stream: bool,
        temperature: Optional[float],
        max_tokens: Optional[int],
    ) -> Dict[str, Any]:
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        if not model:
            raise ValueError("model is required")
        payload: Dict[str, Any] = {"model": model, "messages": cleaned, "stream": stream}
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens:
            payload["max_tokens"] = max_tokens
        return payload

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        response_format: Optional[dict] = None,
    ) -> Dict[str, Any]:
        payload = self._build_payload(model, messages, False, temperature, max_tokens)
        if response_format:
            payload["response_format"] = response_format
        resp = await self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=self._headers())
        resp.raise_for_status()
        data = resp.json()
        choices = data.get("choices") or []
        if choices:
            message = choices[0].get("message") or {}
            if not message.get("content"):
                fallback = message.get("reasoning") or message.get("reasoning_content")
                if fallback:
                    message["content"] = fallback
                    choices[0]["message"] = message
        return data

    async def stream_chat(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncGenerator[Dict[str, Any], None]:
        """Stream chunks: text-delta, reasoning, tool-call (complete), then one finish."""
        payload = self._build_payload(model, messages, True, temperature, max_tokens)
        if tools:
            payload["tools"] = tools
        tool_calls: Dict[int, Dict[str, Any]] = {}
        finish_reason: Optional[str] = None
        usage: Optional[Dict[str, Any]] = None
        async with self.client.stream(
            "POST", f"{self.base_url}/chat/completions", json=payload, headers=self._headers()
        ) as resp:
            if resp.status_code >= 400:
                await resp.aread()
                resp.raise_for_status()
            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                chunk = line[len("data:"):].strip()
                if chunk == "[DONE]":
                    break
                try:
                    data = json.loads(chunk)
                except ValueError:
                    continue
                if data.get("error"):
                    raise RuntimeError(json.dumps(data["error"], ensure_ascii=True))
                if data.get("usage"):
                    usage = data["usage"]
                choices = data.get("choices") or []
                if not choices:
                    continue
                choice = choices[0]
                delta = choice.get("delta") or {}
                reasoning = delta.get("reasoning_content") or delta.get("reasoning")
                if reasoning:
                    yield {"type": "reasoning", "text": reasoning}
                content = delta.get("content")
                if content:
                    yield {"type": "text-delta", "text": content}
                for tc in delta.get("tool_calls") or []:
                    idx = tc.get("index", len(tool_calls))
                    entry = tool_calls.setdefault(idx, {"id": None, "name": "", "arguments": ""})
                    if tc.get("id"):
                        entry["id"] = tc["id"]
                    fn = tc.get("function") or {}
                    if fn.get("name") and not entry["name"]:
                        entry["name"] = fn["name"]
                    if fn.get("arguments"):
                        entry["arguments"] += fn["arguments"]
                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]
        for idx in sorted(tool_calls):
            entry = tool_calls[idx]
            yield {
                "type": "tool-call",
                "tool_call_id": entry["id"] or f"call_{idx}",
                "tool_name": entry["name"],
                "args": _parse_arguments(entry["arguments"]),
            }
        if finish_reason is None:
            finish_reason = "tool_calls" if tool_calls else "stop"
        yield {
            "type": "finish",
            "finish_reason": FINISH_REASONS.get(finish_reason, "other"),
            "usage": usage,
        }

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()


class ModelHandle:
    """A provider model bound to a cached client."""

    def __init__(
        self,
        client: ChatClient,
        provider_id: str,
        model_name: str,
        capabilities: Optional[ModelCapabilities] = None,
    ):
        self.client = client
        self.provider_id = provider_id
        self.model_name = model_name
        self.capabilities = capabilities or ModelCapabilities()

    @property
    def model_id(self) -> str:
        return f"{self.provider_id}:{self.model_name}"

    @staticmethod
    def _with_system(messages: List[Dict[str, Any]], system: Optional[str]) -> List[Dict[str, Any]]:
        if not system:
            return list(messages)
        return [{"role": "system", "content": system}, *messages]

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        system: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        async for chunk in self.client.stream_chat(
            self.model_name, self._with_system(messages, system), tools=tools
        ):
            yield chunk

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        system: Optional[str] = None,
        response_format: Optional[dict] = None,
    ) -> str:
        data = await self.client.chat_completion(
            self.model_name, self._with_system(messages, system), response_format=response_format
        )
        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""


def _partial_suffix_len(text: str, tag: str) -> int:
    """Length of the longest suffix of text that is a proper prefix of tag."""
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


class ReasoningExtractor:
    """Splits <tag>...</tag> spans of a text stream into reasoning chunks."""

    def __init__(self, tag_name: str):
        self.tag_name = tag_name
        self.open_tag = f"<{tag_name}>"
        self.close_tag = f"</{tag_name}>"
        self.buffer = ""
        self.in_reasoning = False

    def _chunk(self, text: str) -> Dict[str, Any]:
        return {"type": "reasoning" if self.in_reasoning else "text-delta", "text": text}

    def feed(self, text: str) -> List[Dict[str, Any]]:
        self.buffer += text
        out: List[Dict[str, Any]] = []
        while True:
            tag = self.close_tag if self.in_reasoning else self.open_tag
            idx = self.buffer.find(tag)
            if idx == -1:
                keep = _partial_suffix_len(self.buffer, tag)
                ready = self.buffer[: len(self.buffer) - keep]
                if ready:
                    out.append(self._chunk(ready))
                self.buffer = self.buffer[len(self.buffer) - keep:]
                return out
            if idx > 0:
                out.append(self._chunk(self.buffer[:idx]))
            self.buffer = self.buffer[idx + len(tag):]
            self.in_reasoning = not self.in_reasoning

    def flush(self) -> List[Dict[str, Any]]:
        if not self.buffer:
            return []
        out = [self._chunk(self.buffer)]
        self.buffer = ""
        return out


class ReasoningModelHandle(ModelHandle):
    """Wraps a handle whose provider inlines chain-of-thought in tagged text."""

    def __init__(self, inner: ModelHandle, tag_name: str):
        super().__init__(inner.client, inner.provider_id, inner.model_name, inner.capabilities)
        self.inner = inner
        self.tag_name = tag_name

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        system: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        extractor = ReasoningExtractor(self.tag_name)
        async for chunk in self.inner.stream(messages, system=system, tools=tools):
            if chunk["type"] == "text-delta":
                for part in extractor.feed(chunk["text"]):
                    yield part
                continue
            if chunk["type"] in ("tool-call", "finish"):
                for part in extractor.flush():
                    yield part
            yield chunk
        for part in extractor.flush():
            yield part

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        system: Optional[str] = None,
        response_format: Optional[dict] = None,
    ) -> str:
        text = await self.inner.complete(messages, system=system, response_format=response_format)
        pattern = re.compile(rf"<{re.escape(self.tag_name)}>.*?</{re.escape(self.tag_name)}>", re.DOTALL)
        return pattern.sub("", text).strip()


def with_reasoning_extraction(handle: ModelHandle, tag_name: str) -> ModelHandle:
    if isinstance(handle, ReasoningModelHandle) and handle.tag_name == tag_name:
        return handle
    return ReasoningModelHandle(handle, tag_name)


_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def parse_json_reply(raw: str) -> Optional[dict]:
    """Parse a model's JSON reply, tolerating code fences and surrounding prose."""
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
        return parsed if isinstance(parsed, dict) else None
    except ValueError:
        pass
    match = _JSON_OBJECT_RE.search(raw)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None
