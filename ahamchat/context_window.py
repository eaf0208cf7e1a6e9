"""Context-window budgeting for chat histories.

Token counts are estimated, not tokenized: ``ceil(chars / 4) + 4`` per
message, where ``chars`` is the length of the text content (structured
content is measured as its JSON encoding) and ``4`` covers role/framing
overhead. Provider-side counts will differ slightly.
"""

import json
import math
from typing import Any, Dict, List, Optional

from .config import AppSettings
from .schemas import ModelDescriptor

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4
MIN_ALLOWED_TOKENS = 1024

CONTEXT_WINDOWS = {
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "o3-mini": 200000,
    "claude": 200000,
    "gemini": 1000000,
    "deepseek": 64000,
    "llama-3.1-8b": 128000,
    "grok": 131072,
}


def estimate_tokens(message: Dict[str, Any]) -> int:
    content = message.get("content")
    if content is None:
        text = ""
    elif isinstance(content, str):
        text = content
    else:
        text = json.dumps(content, ensure_ascii=True)
    if message.get("tool_calls"):
        text += json.dumps(message["tool_calls"], ensure_ascii=True)
    return math.ceil(len(text) / CHARS_PER_TOKEN) + MESSAGE_OVERHEAD_TOKENS


def estimate_total(messages: List[Dict[str, Any]]) -> int:
    return sum(estimate_tokens(m) for m in messages)


def context_window_for(descriptor: Optional[ModelDescriptor], default: int) -> int:
    if descriptor is None:
        return default
    if descriptor.context_window:
        return descriptor.context_window
    name = descriptor.id.lower()
    # Longest marker first so "gpt-4o-mini" wins over "gpt-4o".
    for marker in sorted(CONTEXT_WINDOWS, key=len, reverse=True):
        if marker in name:
            return CONTEXT_WINDOWS[marker]
    return default


def max_allowed_tokens(descriptor: Optional[ModelDescriptor], settings: AppSettings) -> int:
    window = context_window_for(descriptor, settings.default_context_window)
    return max(window - settings.reserved_output_tokens, MIN_ALLOWED_TOKENS)


def truncate_messages(messages: List[Dict[str, Any]], max_tokens: int) -> List[Dict[str, Any]]:
    """Drop oldest non-system messages until the estimate fits max_tokens.

    The most recent user message is always kept, even when it alone exceeds
    the budget, and the kept history starts at a user turn.
    """
    system_idx = [i for i, m in enumerate(messages) if m.get("role") == "system"]
    rest_idx = [i for i, m in enumerate(messages) if m.get("role") != "system"]
    budget = max_tokens - sum(estimate_tokens(messages[i]) for i in system_idx)

    last_user = None
    for pos in range(len(rest_idx) - 1, -1, -1):
        if messages[rest_idx[pos]].get("role") == "user":
            last_user = pos
            break
    if last_user is None:
        last_user = len(rest_idx) - 1

    costs = [estimate_tokens(messages[i]) for i in rest_idx]
    total = sum(costs)
    start = 0
    while start < last_user and total > budget:
        total -= costs[start]
        start += 1
    if start > 0:
        while start < last_user and messages[rest_idx[start]].get("role") != "user":
            start += 1

    keep = set(system_idx) | set(rest_idx[start:])
    return [m for i, m in enumerate(messages) if i in keep]
