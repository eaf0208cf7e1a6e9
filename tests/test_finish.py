import pytest

from ahamchat.config import AppSettings
from ahamchat.finish import build_transcript, handle_stream_finish
from ahamchat.llm import ModelHandle
from ahamchat.orchestrator import DataStream
from ahamchat.schemas import Message
from tests.fakes import FakeChatClient, FakeDatabase


def drain(writer: DataStream):
    events = []
    while not writer.queue.empty():
        events.append(writer.queue.get_nowait())
    return events


def base_kwargs(writer, fake, db, **overrides):
    kwargs = dict(
        writer=writer,
        response_messages=[{"role": "assistant", "content": "The answer"}],
        original_messages=[Message(id="u1", role="user", content="question?")],
        model=ModelHandle(fake, "openai", "gpt-4o-mini"),
        chat_id="chat-9",
        user_id="user-1",
        skip_related_questions=False,
        settings=AppSettings(),
        db=db,
    )
    kwargs.update(overrides)
    return kwargs


@pytest.mark.asyncio
async def test_persistence_failure_is_swallowed():
    writer = DataStream()
    fake = FakeChatClient(completions=['{"items": [{"query": "a"}]}'])
    await handle_stream_finish(**base_kwargs(writer, fake, FakeDatabase(fail=True)))
    events = drain(writer)
    assert events[-1]["value"]["data"]["items"] == [{"query": "a"}]


@pytest.mark.asyncio
async def test_bad_related_questions_reply_is_swallowed_and_still_persists():
    writer = DataStream()
    db = FakeDatabase()
    fake = FakeChatClient(completions=["Sure! Here are some questions."])
    await handle_stream_finish(**base_kwargs(writer, fake, db))
    events = drain(writer)
    assert events == [{"type": "annotation", "value": {"type": "related-questions", "data": {"items": []}}}]
    assert len(db.saved) == 1
    assert [m["role"] for m in db.saved[0]["messages"]] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_related_questions_are_capped_and_use_history():
    writer = DataStream()
    items = ", ".join(f'{{"query": "q{i}"}}' for i in range(8))
    fake = FakeChatClient(completions=[f'{{"items": [{items}]}}'])
    await handle_stream_finish(**base_kwargs(writer, fake, None))
    result = drain(writer)[-1]["value"]["data"]["items"]
    assert len(result) == 5
    sent = fake.completion_calls[0]["messages"]
    assert sent[0]["role"] == "system"
    assert sent[1:] == [{"role": "user", "content": "question?"}, {"role": "assistant", "content": "The answer"}]


@pytest.mark.asyncio
async def test_history_disabled_skips_persistence():
    writer = DataStream()
    db = FakeDatabase()
    fake = FakeChatClient()
    await handle_stream_finish(
        **base_kwargs(
            writer, fake, db, skip_related_questions=True, settings=AppSettings(save_chat_history=False)
        )
    )
    assert db.saved == []
    assert drain(writer) == []
    assert fake.completion_calls == []


def test_build_transcript_assigns_ids():
    transcript = build_transcript(
        [Message(id="u1", role="user", content="hi")],
        [{"role": "assistant", "content": "hello"}],
        [{"type": "reasoning", "data": {"time": 5}}],
    )
    assert transcript[0] == {"id": "u1", "role": "user", "content": "hi"}
    assert transcript[1]["id"]
    assert transcript[2]["role"] == "data"
    assert transcript[2]["content"] == {"type": "reasoning", "data": {"time": 5}}
