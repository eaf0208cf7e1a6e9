import json

import pytest
import respx
from httpx import Response

from ahamchat.llm import ChatClient, ModelHandle, ReasoningExtractor, parse_json_reply, with_reasoning_extraction
from tests.fakes import FakeChatClient, text_step


def sse_body(chunks):
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


@pytest.mark.asyncio
async def test_stream_chat_accumulates_tool_calls_and_text():
    client = ChatClient("http://llm.test/v1", api_key="sk-test")
    chunks = [
        {"choices": [{"delta": {"content": "Let me "}}]},
        {"choices": [{"delta": {"content": "check."}}]},
        {
            "choices": [
                {
                    "delta": {
                        "tool_calls": [
                            {"index": 0, "id": "call_a", "function": {"name": "search", "arguments": '{"que'}}
                        ]
                    }
                }
            ]
        },
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'ry": "x"}'}}]}}]},
        {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
    ]
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["auth"] = request.headers.get("Authorization")
                return Response(200, content=sse_body(chunks), headers={"Content-Type": "text/event-stream"})

            respx_mock.post("http://llm.test/v1/chat/completions").mock(side_effect=handler)
            out = [c async for c in client.stream_chat("gpt-4o", [{"role": "user", "content": "hi"}], tools=[{"x": 1}])]
    finally:
        await client.close()

    assert captured["json"]["stream"] is True
    assert captured["json"]["tools"] == [{"x": 1}]
    assert captured["auth"] == "Bearer sk-test"
    assert [c["type"] for c in out] == ["text-delta", "text-delta", "tool-call", "finish"]
    assert out[2] == {"type": "tool-call", "tool_call_id": "call_a", "tool_name": "search", "args": {"query": "x"}}
    assert out[3]["finish_reason"] == "tool-calls"


@pytest.mark.asyncio
async def test_stream_chat_reasoning_content_and_http_error():
    client = ChatClient("http://llm.test/v1", api_key="sk-test")
    try:
        with respx.mock() as respx_mock:
            respx_mock.post("http://llm.test/v1/chat/completions").mock(
                return_value=Response(
                    200,
                    content=sse_body(
                        [
                            {"choices": [{"delta": {"reasoning_content": "thinking"}}]},
                            {"choices": [{"delta": {"content": "done"}, "finish_reason": "stop"}]},
                        ]
                    ),
                )
            )
            out = [c async for c in client.stream_chat("deepseek-reasoner", [{"role": "user", "content": "q"}])]
            assert out[0] == {"type": "reasoning", "text": "thinking"}
            assert out[1] == {"type": "text-delta", "text": "done"}
            assert out[-1]["finish_reason"] == "stop"

        with respx.mock() as respx_mock:
            respx_mock.post("http://llm.test/v1/chat/completions").mock(return_value=Response(401, json={"error": "bad key"}))
            with pytest.raises(Exception) as excinfo:
                [c async for c in client.stream_chat("gpt-4o", [{"role": "user", "content": "q"}])]
            assert "401" in str(excinfo.value)
    finally:
        await client.close()


def test_azure_style_header():
    client = ChatClient("https://res.openai.azure.com/openai/v1", api_key="az", auth_header="api-key")
    headers = client._headers()
    assert headers["api-key"] == "az"
    assert "Authorization" not in headers


def test_sanitize_keeps_tool_messages():
    client = ChatClient("http://llm.test/v1")
    cleaned = client._sanitize_messages(
        [
            {"role": "data", "content": {"type": "reasoning"}},
            {"role": "user", "content": "  "},
            {"role": "assistant", "content": "", "tool_calls": [{"id": "c1"}]},
            {"role": "tool", "tool_call_id": "c1", "content": {"success": True}},
            {"role": "tool", "content": "orphan"},
        ]
    )
    assert [m["role"] for m in cleaned] == ["assistant", "tool"]
    assert cleaned[0]["content"] is None
    assert cleaned[1]["content"] == '{"success": true}'


def test_reasoning_extractor_handles_split_tags():
    extractor = ReasoningExtractor("think")
    pieces = ["Hi <th", "ink>step one", " step two</thi", "nk> answer"]
    out = []
    for piece in pieces:
        out.extend(extractor.feed(piece))
    out.extend(extractor.flush())
    reasoning = "".join(c["text"] for c in out if c["type"] == "reasoning")
    text = "".join(c["text"] for c in out if c["type"] == "text-delta")
    assert reasoning == "step one step two"
    assert text == "Hi  answer"
    # Order is preserved: text, reasoning, text.
    kinds = [c["type"] for c in out]
    assert kinds.index("reasoning") > kinds.index("text-delta")
    assert kinds[-1] == "text-delta"


def test_reasoning_extractor_flushes_dangling_partial_tag():
    extractor = ReasoningExtractor("think")
    out = extractor.feed("value <")
    assert out == [{"type": "text-delta", "text": "value "}]
    assert extractor.flush() == [{"type": "text-delta", "text": "<"}]


@pytest.mark.asyncio
async def test_reasoning_handle_splits_stream_and_strips_completion():
    fake = FakeChatClient(
        steps=[text_step("<think>plan", "</think>", "Answer")],
        completions=["<think>hidden</think> visible"],
    )
    handle = with_reasoning_extraction(ModelHandle(fake, "ollama", "deepseek-r1"), "think")
    chunks = [c async for c in handle.stream([{"role": "user", "content": "q"}], system="sys")]
    assert {"type": "reasoning", "text": "plan"} in chunks
    assert {"type": "text-delta", "text": "Answer"} in chunks
    assert chunks[-1]["type"] == "finish"
    assert fake.stream_calls[0]["messages"][0] == {"role": "system", "content": "sys"}

    assert await handle.complete([{"role": "user", "content": "q"}]) == "visible"


def test_parse_json_reply_tolerates_fences():
    assert parse_json_reply('```json\n{"tool": null, "parameters": {}}\n```') == {"tool": None, "parameters": {}}
    assert parse_json_reply("no json here") is None
    assert parse_json_reply("[1, 2]") is None
