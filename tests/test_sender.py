import asyncio
import json

import httpx
import pytest

from hatzchat.config import SYSTEM_PROMPT
from hatzchat.models import Attachment, Message, Role
from hatzchat.sender import Sender, SendState, build_request_messages
from hatzchat.storage import ChatPersistence

from .conftest import chunk_line, stream_body, wait_for

FLUSH = 0.01


def _assistant(store, convo_id):
    return store.get(convo_id).messages[-1]


class TestSend:
    @pytest.mark.asyncio
    async def test_streams_reply_and_persists_once_at_end(self, make_store, chats_path):
        seen = {}

        def handler(request: httpx.Request):
            seen["payload"] = json.loads(request.content)
            # The user's message is on disk before any streaming happens
            seen["persisted"] = ChatPersistence(chats_path).load()[0].messages
            return httpx.Response(200, content=stream_body(
                chunk_line("Hello"),
                chunk_line(", "),
                chunk_line("<details><summary>tool</summary>"),
                chunk_line("world\n"),
                b"Tool result: 42\n",
                b"data: [DONE]\n",
            ))

        store = make_store(handler)
        convo = store.new_conversation()
        store.add_attachment(convo.id, Attachment(display_name="a.pdf", file_uuid="f-1"))
        store.add_attachment(convo.id, Attachment(display_name="b.pdf"))
        sender = Sender(store, flush_interval=FLUSH)

        assert await sender.send(convo.id, "  What is the answer?  ")

        saved = store.get(convo.id)
        assert [m.role for m in saved.messages] == [Role.USER, Role.ASSISTANT]
        assert saved.messages[0].content == "What is the answer?"
        assert saved.messages[1].content == "Hello, world"
        assert saved.title == "What is the answer?"
        assert ChatPersistence(chats_path).load()[0] == saved

        assert [(m.role, m.content) for m in seen["persisted"]] == [
            (Role.USER, "What is the answer?"),
            (Role.ASSISTANT, ""),
        ]
        assert seen["payload"]["stream"] is True
        assert seen["payload"]["file_uuids"] == ["f-1"]
        assert seen["payload"]["messages"] == [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": "What is the answer?"},
        ]
        assert sender.state(convo.id) == SendState.IDLE

    @pytest.mark.asyncio
    async def test_title_truncated_and_only_set_once(self, make_store):
        def handler(request):
            return httpx.Response(200, content=stream_body(chunk_line("ok"), b"[DONE]\n"))

        store = make_store(handler)
        convo = store.new_conversation()
        sender = Sender(store, flush_interval=FLUSH)
        long_text = "x" * 60

        await sender.send(convo.id, long_text)
        await sender.send(convo.id, "second question")

        saved = store.get(convo.id)
        assert saved.title == "x" * 48
        assert len(saved.messages) == 4

    @pytest.mark.asyncio
    async def test_details_tags_split_across_tokens_only_drop_tag_tokens(self, make_store):
        def handler(request):
            return httpx.Response(200, content=stream_body(
                b"Intro\n",
                b"<details>\n",
                chunk_line("hidden line\n"),
                chunk_line("</details>"),
                chunk_line("\nOutro"),
                b"data: [DONE]\n",
            ))

        store = make_store(handler)
        convo = store.new_conversation()
        await Sender(store, flush_interval=FLUSH).send(convo.id, "hi")

        assert _assistant(store, convo.id).content == "Introhidden line\n\nOutro"

    @pytest.mark.asyncio
    async def test_chunk_boundaries_do_not_change_result(self, make_store):
        body = (chunk_line("Zürich ") + chunk_line("🚆 tåg") + "plåin\n".encode() + b"data: [DONE]\n")
        results = []

        for chunks in ([body], [bytes([b]) for b in body]):
            store = make_store(lambda r, chunks=chunks: httpx.Response(200, content=stream_body(*chunks)))
            convo = store.new_conversation()
            await Sender(store, flush_interval=FLUSH).send(convo.id, "go")
            results.append(_assistant(store, convo.id).content)

        assert results == ["Zürich 🚆 tågplåin", "Zürich 🚆 tågplåin"]


class TestRejections:
    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, make_store):
        store = make_store()
        convo = store.new_conversation()
        assert not await Sender(store).send(convo.id, "   ")
        assert store.get(convo.id).messages == []

    @pytest.mark.asyncio
    async def test_missing_key_rejected(self, make_store):
        store = make_store(api_key=None)
        convo = store.new_conversation()
        assert not await Sender(store).send(convo.id, "hello")
        assert store.get(convo.id).messages == []
        assert "API key" in store.last_error

    @pytest.mark.asyncio
    async def test_second_send_while_streaming_is_noop(self, make_store):
        gate = asyncio.Event()

        def handler(request):
            return httpx.Response(200, content=stream_body(chunk_line("partial"), gate=gate))

        store = make_store(handler)
        convo = store.new_conversation()
        sender = Sender(store, flush_interval=FLUSH)

        task = sender.start(convo.id, "first")
        await wait_for(lambda: sender.state(convo.id) == SendState.STREAMING)

        assert sender.start(convo.id, "second") is None
        assert not await sender.send(convo.id, "third")
        assert len(store.get(convo.id).messages) == 2

        gate.set()
        assert await task
        assert len(store.get(convo.id).messages) == 2
        assert not sender.is_sending(convo.id)


class TestFailures:
    @pytest.mark.asyncio
    async def test_http_error_written_into_reply(self, make_store, chats_path):
        store = make_store(lambda r: httpx.Response(401, text="bad key"))
        convo = store.new_conversation()

        assert await Sender(store, flush_interval=FLUSH).send(convo.id, "hello")

        assert _assistant(store, convo.id).content == "Error: bad key"
        assert store.last_error == "bad key"
        assert ChatPersistence(chats_path).load()[0].messages[-1].content == "Error: bad key"

    @pytest.mark.asyncio
    async def test_transport_error_written_into_reply(self, make_store):
        def handler(request):
            raise httpx.ConnectError("no route", request=request)

        store = make_store(handler)
        convo = store.new_conversation()
        await Sender(store, flush_interval=FLUSH).send(convo.id, "hello")

        content = _assistant(store, convo.id).content
        assert content.startswith("Error: ")
        assert "no route" in content


class TestCancellation:
    @pytest.mark.asyncio
    async def test_stop_keeps_flushed_text_without_persisting(self, make_store, chats_path):
        gate = asyncio.Event()
        later = asyncio.Event()

        async def body():
            yield chunk_line("Hello")
            await gate.wait()
            yield chunk_line(" never shown")
            later.set()

        store = make_store(lambda r: httpx.Response(200, content=body()))
        convo = store.new_conversation()
        sender = Sender(store, flush_interval=FLUSH)

        task = sender.start(convo.id, "hi")
        await wait_for(lambda: _assistant(store, convo.id).content == "Hello")

        # Mid-stream flushes stay in memory only
        assert ChatPersistence(chats_path).load()[0].messages[-1].content == ""

        assert sender.stop(convo.id)
        with pytest.raises(asyncio.CancelledError):
            await task

        gate.set()
        await asyncio.sleep(FLUSH * 5)

        assert not later.is_set()
        assert _assistant(store, convo.id).content == "Hello"
        assert ChatPersistence(chats_path).load()[0].messages[-1].content == ""
        assert not sender.is_sending(convo.id)
        assert store.last_error is None

    @pytest.mark.asyncio
    async def test_stop_right_after_final_persist_leaves_conversation_idle(self, make_store, chats_path):
        def handler(request):
            return httpx.Response(200, content=stream_body(chunk_line("ok"), b"data: [DONE]\n"))

        store = make_store(handler)
        convo = store.new_conversation()
        sender = Sender(store, flush_interval=FLUSH)
        loop = asyncio.get_running_loop()
        stops = []

        def stop_once_finalized(event):
            saved = ChatPersistence(chats_path).load()
            if not stops and saved and saved[0].messages and saved[0].messages[-1].content == "ok":
                stops.append(loop.call_soon(sender.stop, convo.id))

        store.subscribe(stop_once_finalized)

        assert await sender.send(convo.id, "first")
        await asyncio.sleep(0)

        assert stops
        assert not sender.is_sending(convo.id)
        assert sender.state(convo.id) == SendState.IDLE
        assert await sender.send(convo.id, "second")
        assert len(store.get(convo.id).messages) == 4

    @pytest.mark.asyncio
    async def test_stop_when_idle(self, make_store):
        store = make_store()
        convo = store.new_conversation()
        assert not Sender(store).stop(convo.id)


def test_build_request_messages_excludes_placeholder(make_store):
    store = make_store()
    convo = store.new_conversation()
    placeholder = Message(role=Role.ASSISTANT)
    convo.messages = [
        Message(role=Role.USER, content="q"),
        Message(role=Role.ASSISTANT, content="a"),
        Message(role=Role.USER, content="q2"),
        placeholder,
    ]

    messages = build_request_messages(convo, exclude=placeholder.id)

    assert messages[0]["role"] == "system"
    assert [m["content"] for m in messages[1:]] == ["q", "a", "q2"]
