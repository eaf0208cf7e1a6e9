import json
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


Role = Literal["user", "assistant", "system", "data", "tool"]
ToolCallType = Literal["native", "manual"]
ToolInvocationState = Literal["call", "result"]


class Message(BaseModel):
    id: Optional[str] = None
    role: Role
    content: Any = ""
    parts: Optional[List[Dict[str, Any]]] = None

    model_config = {"extra": "allow"}

    def text(self) -> str:
        if isinstance(self.content, str) and self.content:
            return self.content
        if self.parts:
            return "".join(p.get("text", "") for p in self.parts if p.get("type") == "text")
        if isinstance(self.content, list):
            return "".join(
                item.get("text", "") for item in self.content if isinstance(item, dict) and item.get("type") == "text"
            )
        if self.content in (None, ""):
            return ""
        return json.dumps(self.content, ensure_ascii=True)


class CompatibleConfig(BaseModel):
    enabled: bool = False
    api_key: str = Field(default="", alias="apiKey")
    base_url: str = Field(default="", alias="baseURL")

    model_config = ConfigDict(populate_by_name=True)


class ModelDescriptor(BaseModel):
    id: str
    name: str = ""
    provider: str = ""
    provider_id: str = Field(alias="providerId")
    enabled: bool = True
    tool_call_type: ToolCallType = Field(default="native", alias="toolCallType")
    tool_call_model: Optional[str] = Field(default=None, alias="toolCallModel")
    compatible_config: Optional[CompatibleConfig] = Field(default=None, alias="openaiCompatibleConfig")
    context_window: Optional[int] = Field(default=None, alias="contextWindow")

    model_config = ConfigDict(populate_by_name=True, frozen=True, protected_namespaces=())

    @property
    def model_id(self) -> str:
        return f"{self.provider_id}:{self.id}"

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"compatible_config"}, exclude_none=True)


class ModelCapabilities(BaseModel):
    supports_native_tools: bool = True
    reasoning_tag_name: Optional[str] = None
    is_reasoning_model: bool = False

    model_config = {"frozen": True}


class ToolInvocation(BaseModel):
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    args: Dict[str, Any] = Field(default_factory=dict)
    state: ToolInvocationState = "call"
    result: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True)

    def with_result(self, result: Dict[str, Any]) -> "ToolInvocation":
        if self.state == "result":
            raise ValueError(f"tool invocation {self.tool_call_id} already has a result")
        return self.model_copy(update={"state": "result", "result": result})


class ChatRequest(BaseModel):
    messages: List[Message]
    id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        messages = data.get("messages")
        if isinstance(messages, list):
            data["messages"] = [m for m in messages if isinstance(m, dict) and m.get("role")]
        return data


class OpenAICompatibleSettings(BaseModel):
    api_key: str = Field(default="", alias="apiKey")
    base_url: str = Field(default="", alias="baseURL")
    model: str = ""
    enabled: bool = False

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    @property
    def usable(self) -> bool:
        return bool(self.enabled and self.api_key and self.base_url)

    def to_safe_dict(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True)
        if data.get("apiKey"):
            data["apiKey"] = "********"
        return data


class ChatSection(BaseModel):
    id: str
    user_message: Message
    assistant_messages: List[Message] = Field(default_factory=list)


def group_sections(messages: List[Message]) -> List[ChatSection]:
    """Group each user message with the assistant messages that follow it."""
    sections: List[ChatSection] = []
    for idx, message in enumerate(messages):
        if message.role == "user":
            sections.append(ChatSection(id=message.id or f"section-{idx}", user_message=message))
        elif message.role == "assistant" and sections:
            sections[-1].assistant_messages.append(message)
    return sections


def to_core_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    """Convert UI messages to provider chat messages, dropping data annotations."""
    core: List[Dict[str, Any]] = []
    for message in messages:
        if message.role == "data":
            continue
        if message.role == "tool":
            core.append(message.model_dump(exclude={"id", "parts"}, exclude_none=True))
            continue
        text = message.text()
        if not text.strip():
            continue
        core.append({"role": message.role, "content": text})
    return core
