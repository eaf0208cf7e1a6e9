import asyncio
import json
import logging
import time
import uuid
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from . import agents
from .config import AppSettings
from .context_window import max_allowed_tokens, truncate_messages
from .db import Database
from .errors import StreamingError, classify_stream_error
from .finish import handle_stream_finish
from .llm import ModelHandle, parse_json_reply
from .schemas import Message, ModelDescriptor, to_core_messages
from .tools import ToolContext, ToolRegistry

logger = logging.getLogger("uvicorn.error")

_DONE = object()


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class DataStream:
    """Queue-backed writer that merges every event of one turn into a single SSE body."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def write(self, event: Dict[str, Any]) -> None:
        # Nothing is delivered once the client is gone.
        if self.closed:
            return
        self.queue.put_nowait(event)

    def write_annotation(self, value: Dict[str, Any]) -> None:
        self.write({"type": "annotation", "value": value})

    async def _execute(self, execute: Callable[["DataStream"], Awaitable[None]]) -> None:
        try:
            await execute(self)
        except StreamingError as exc:
            logger.error("Stream failed (%s): %s", exc.kind, exc.message)
            self.write({"type": "error", "error": exc.message})
        except Exception as exc:
            logger.exception("Stream execution error")
            _, message = classify_stream_error(exc)
            self.write({"type": "error", "error": message})
        finally:
            self.queue.put_nowait(_DONE)

    async def run(self, execute: Callable[["DataStream"], Awaitable[None]]) -> AsyncIterator[str]:
        task = asyncio.ensure_future(self._execute(execute))
        try:
            while True:
                event = await self.queue.get()
                if event is _DONE:
                    break
                yield sse_format(event)
            yield "data: [DONE]\n\n"
        finally:
            self.closed = True
            if not task.done():
                task.cancel()


class ToolCallingStream:
    """Native tool calling: the model decides on tool calls inside a bounded step loop."""

    def __init__(
        self,
        *,
        model: ModelHandle,
        descriptor: Optional[ModelDescriptor],
        messages: List[Message],
        chat_id: Optional[str],
        user_id: str,
        search_mode: bool,
        tools: ToolRegistry,
        tool_ctx: ToolContext,
        settings: AppSettings,
        db: Optional[Database] = None,
    ):
        self.model = model
        self.descriptor = descriptor
        self.messages = messages
        self.chat_id = chat_id
        self.user_id = user_id
        self.search_mode = search_mode
        self.tools = tools
        self.tool_ctx = tool_ctx
        self.settings = settings
        self.db = db
        self.state = "initial"
        self.steps = 0

    async def _run_tools(
        self, writer: DataStream, calls: List[Dict[str, Any]]
    ) -> Dict[str, Dict[str, Any]]:
        results: Dict[str, Dict[str, Any]] = {}
        async for call, result in self.tools.execute_many(calls, self.tool_ctx):
            results[call["tool_call_id"]] = result
            writer.write(
                {
                    "type": "tool-result",
                    "toolCallId": call["tool_call_id"],
                    "toolName": call["tool_name"],
                    "args": call["args"],
                    "result": result,
                }
            )
        return results

    async def _step(
        self,
        writer: DataStream,
        conversation: List[Dict[str, Any]],
        system: str,
        tool_schemas: Optional[List[Dict[str, Any]]],
    ) -> Tuple[Dict[str, Any], List[Dict[str, Any]], str, Optional[dict]]:
        text_parts: List[str] = []
        calls: List[Dict[str, Any]] = []
        finish_reason = "stop"
        usage = None
        async for chunk in self.model.stream(conversation, system=system, tools=tool_schemas):
            kind = chunk["type"]
            if kind == "text-delta":
                text_parts.append(chunk["text"])
                writer.write({"type": "text-delta", "textDelta": chunk["text"]})
            elif kind == "reasoning":
                writer.write({"type": "reasoning-delta", "textDelta": chunk["text"]})
            elif kind == "tool-call":
                calls.append(chunk)
                writer.write(
                    {
                        "type": "tool-call",
                        "toolCallId": chunk["tool_call_id"],
                        "toolName": chunk["tool_name"],
                        "args": chunk["args"],
                    }
                )
            elif kind == "finish":
                finish_reason = chunk.get("finish_reason") or "stop"
                usage = chunk.get("usage")
        assistant: Dict[str, Any] = {"role": "assistant", "content": "".join(text_parts)}
        if calls:
            assistant["tool_calls"] = [
                {
                    "id": c["tool_call_id"],
                    "type": "function",
                    "function": {"name": c["tool_name"], "arguments": json.dumps(c["args"])},
                }
                for c in calls
            ]
        return assistant, calls, finish_reason, usage

    async def execute(self, writer: DataStream) -> None:
        self.state = "streaming"
        active = self.tools.names() if self.search_mode else []
        max_steps = max(1, self.settings.max_tool_steps) if self.search_mode else 1
        tool_schemas = self.tools.openai_tools(active) if active else None
        response_messages: List[Dict[str, Any]] = []
        asked_question = False
        finish_reason = "stop"
        usage = None
        try:
            budget = max_allowed_tokens(self.descriptor, self.settings)
            conversation = truncate_messages(to_core_messages(self.messages), budget)
            system = agents.researcher_prompt()
            logger.info("Native tool stream for %s (search_mode=%s, max_steps=%d)", self.model.model_id, self.search_mode, max_steps)
            while self.steps < max_steps:
                self.steps += 1
                assistant, calls, finish_reason, usage = await self._step(writer, conversation, system, tool_schemas)
                conversation.append(assistant)
                response_messages.append(assistant)
                if calls:
                    self.state = "tool-pending"
                    results = await self._run_tools(writer, calls)
                    for call in calls:
                        tool_message = {
                            "role": "tool",
                            "tool_call_id": call["tool_call_id"],
                            "name": call["tool_name"],
                            "content": json.dumps(results[call["tool_call_id"]]),
                        }
                        conversation.append(tool_message)
                        response_messages.append(tool_message)
                    self.state = "streaming"
                writer.write({"type": "step-finish", "finishReason": finish_reason})
                asked_question = any(self.tools.is_terminal(c["tool_name"]) for c in calls)
                if not calls or asked_question:
                    break
            if self.steps >= max_steps and finish_reason == "tool-calls":
                logger.info("Tool step limit (%d) reached for %s", max_steps, self.model.model_id)
        except Exception as exc:
            self.state = "errored"
            kind, message = classify_stream_error(exc)
            writer.write_annotation({"type": "error", "data": {"message": message, "originalError": str(exc)}})
            raise StreamingError(kind, message, exc) from exc

        skip_related = self.model.capabilities.is_reasoning_model or asked_question
        await handle_stream_finish(
            writer=writer,
            response_messages=response_messages,
            original_messages=self.messages,
            model=self.model,
            chat_id=self.chat_id,
            user_id=self.user_id,
            skip_related_questions=skip_related,
            settings=self.settings,
            db=self.db,
        )
        writer.write({"type": "finish", "finishReason": finish_reason, "usage": usage})
        self.state = "finished"


class ManualToolStream:
    """Two-phase fallback for models without native tool calls: select-tool, then answer."""

    def __init__(
        self,
        *,
        model: ModelHandle,
        tool_model: ModelHandle,
        descriptor: Optional[ModelDescriptor],
        messages: List[Message],
        chat_id: Optional[str],
        user_id: str,
        search_mode: bool,
        tools: ToolRegistry,
        tool_ctx: ToolContext,
        settings: AppSettings,
        db: Optional[Database] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.model = model
        self.tool_model = tool_model
        self.descriptor = descriptor
        self.messages = messages
        self.chat_id = chat_id
        self.user_id = user_id
        self.search_mode = search_mode
        self.tools = tools
        self.tool_ctx = tool_ctx
        self.settings = settings
        self.db = db
        self.clock = clock
        self.phase = "select-tool"

    async def select_tool(self, conversation: List[Dict[str, Any]]) -> Optional[Tuple[str, Dict[str, Any]]]:
        prompt = agents.tool_selection_prompt(self.tools.describe())
        raw = await self.tool_model.complete(conversation, system=prompt)
        decision = parse_json_reply(raw)
        if not decision:
            logger.warning("Tool selection returned unparseable output from %s", self.tool_model.model_id)
            return None
        name = decision.get("tool")
        if not name or self.tools.get(name) is None:
            return None
        params = decision.get("parameters")
        return name, params if isinstance(params, dict) else {}

    async def _select_phase(
        self, writer: DataStream, conversation: List[Dict[str, Any]]
    ) -> Tuple[Optional[Dict[str, Any]], List[Dict[str, Any]]]:
        if not self.search_mode:
            return None, []
        selection = await self.select_tool(conversation)
        if selection is None:
            return None, []
        name, params = selection
        call = {"tool_call_id": new_call_id(), "tool_name": name, "args": params}
        call_data = {"state": "call", "toolCallId": call["tool_call_id"], "toolName": name, "args": json.dumps(params)}
        writer.write_annotation({"type": "tool_call", "data": call_data})
        result = await self.tools.execute(call, self.tool_ctx)
        annotation = {"type": "tool_call", "data": {**call_data, "state": "result", "result": json.dumps(result)}}
        writer.write_annotation(annotation)
        tool_messages = [
            {"role": "assistant", "content": f"Tool call result: {json.dumps(result)}"},
            {"role": "user", "content": "Now answer the user question."},
        ]
        return annotation, tool_messages

    async def execute(self, writer: DataStream) -> None:
        reasoning_parts: List[str] = []
        text_parts: List[str] = []
        first_reasoning: Optional[float] = None
        last_reasoning: Optional[float] = None
        duration_ms: Optional[int] = None
        finish_reason = "stop"
        usage = None

        def emit_reasoning_time() -> None:
            nonlocal duration_ms
            if first_reasoning is None or duration_ms is not None:
                return
            duration_ms = int(round((last_reasoning - first_reasoning) * 1000))
            writer.write_annotation({"type": "reasoning", "data": {"time": duration_ms}})

        try:
            budget = max_allowed_tokens(self.descriptor, self.settings)
            conversation = truncate_messages(to_core_messages(self.messages), budget)
            self.phase = "select-tool"
            tool_annotation, tool_messages = await self._select_phase(writer, conversation)

            self.phase = "answer"
            system = agents.manual_researcher_prompt(self.search_mode)
            async for chunk in self.model.stream([*conversation, *tool_messages], system=system):
                kind = chunk["type"]
                if kind == "reasoning":
                    now = self.clock()
                    if first_reasoning is None:
                        first_reasoning = now
                    last_reasoning = now
                    reasoning_parts.append(chunk["text"])
                    writer.write({"type": "reasoning-delta", "textDelta": chunk["text"]})
                    continue
                emit_reasoning_time()
                if kind == "text-delta":
                    text_parts.append(chunk["text"])
                    writer.write({"type": "text-delta", "textDelta": chunk["text"]})
                elif kind == "finish":
                    finish_reason = chunk.get("finish_reason") or "stop"
                    usage = chunk.get("usage")
            emit_reasoning_time()
            writer.write({"type": "step-finish", "finishReason": finish_reason})
        except Exception as exc:
            self.phase = "errored"
            kind, message = classify_stream_error(exc)
            writer.write_annotation({"type": "error", "data": {"message": message, "originalError": str(exc)}})
            raise StreamingError(kind, message, exc) from exc

        annotations: List[Dict[str, Any]] = []
        if tool_annotation is not None:
            annotations.append(tool_annotation)
        annotations.append({"type": "reasoning", "data": {"time": duration_ms or 0, "reasoning": "".join(reasoning_parts)}})
        await handle_stream_finish(
            writer=writer,
            response_messages=[{"role": "assistant", "content": "".join(text_parts)}],
            original_messages=self.messages,
            model=self.model,
            chat_id=self.chat_id,
            user_id=self.user_id,
            skip_related_questions=True,
            settings=self.settings,
            db=self.db,
            annotations=annotations,
        )
        writer.write({"type": "finish", "finishReason": finish_reason, "usage": usage})
        self.phase = "finished"
