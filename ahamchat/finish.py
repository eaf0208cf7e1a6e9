import logging
import uuid
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from . import agents
from .config import AppSettings
from .db import Database
from .errors import AnnotationError
from .llm import ModelHandle, parse_json_reply
from .schemas import Message, to_core_messages

if TYPE_CHECKING:
    from .orchestrator import DataStream

MAX_RELATED_QUESTIONS = 5

logger = logging.getLogger("uvicorn.error")


async def generate_related_questions(model: ModelHandle, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    raw = await model.complete(messages, system=agents.RELATED_QUESTIONS_SYSTEM)
    parsed = parse_json_reply(raw)
    if not parsed or not isinstance(parsed.get("items"), list):
        raise AnnotationError(f"Related questions reply was not valid JSON: {raw[:200]!r}")
    items = [
        {"query": str(item["query"]).strip()}
        for item in parsed["items"]
        if isinstance(item, dict) and str(item.get("query") or "").strip()
    ]
    return {"items": items[:MAX_RELATED_QUESTIONS]}


def _chat_title(messages: List[Message]) -> str:
    for message in messages:
        if message.role == "user":
            text = message.text().strip()
            if text:
                return text[:100]
    return "Untitled"


def build_transcript(
    original_messages: List[Message],
    response_messages: List[Dict[str, Any]],
    annotations: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    transcript = [m.model_dump(exclude_none=True) for m in original_messages]
    for message in response_messages:
        transcript.append({"id": message.get("id") or uuid.uuid4().hex, **message})
    for annotation in annotations:
        transcript.append({"id": uuid.uuid4().hex, "role": "data", "content": annotation})
    return transcript


async def handle_stream_finish(
    *,
    writer: "DataStream",
    response_messages: List[Dict[str, Any]],
    original_messages: List[Message],
    model: ModelHandle,
    chat_id: Optional[str],
    user_id: str,
    skip_related_questions: bool,
    settings: AppSettings,
    db: Optional[Database] = None,
    annotations: Optional[List[Dict[str, Any]]] = None,
) -> None:
    """Post-process a completed turn. Never raises: the user already has the answer."""
    extra = list(annotations or [])

    if not skip_related_questions and settings.related_questions:
        writer.write_annotation({"type": "related-questions", "data": {"items": []}})
        try:
            history = to_core_messages(original_messages) + [
                {"role": m["role"], "content": m["content"]}
                for m in response_messages
                if m.get("role") == "assistant" and m.get("content")
            ]
            related = await generate_related_questions(model, history)
            annotation = {"type": "related-questions", "data": related}
            writer.write_annotation(annotation)
            extra.append(annotation)
        except Exception as exc:
            logger.warning("Related questions failed for %s: %s", model.model_id, exc)

    if not settings.save_chat_history or db is None or not chat_id:
        return
    try:
        transcript = build_transcript(original_messages, response_messages, extra)
        await db.save_chat(chat_id, user_id, _chat_title(original_messages), transcript)
        logger.info("Saved chat %s (%d messages)", chat_id, len(transcript))
    except Exception as exc:
        logger.warning("Failed to save chat %s: %s", chat_id, exc)

