import asyncio

from thinking_chat.core.exceptions import BackendUnavailableError, EndpointError
from thinking_chat.schemas.chat import ChatMessage, ChatRequest, ChatSettings, ThinkingSettings
from thinking_chat.services.orchestrator import ChatOrchestrator
from thinking_chat.services.sse import parse_event_block
from thinking_chat.services.streaming import (
    TERMINAL_EVENTS,
    ChatEventStream,
    GenerationRegistry,
    describe_error,
)
from tests.mocks.fake_backend import FakeBackend


def _request(thinking: bool = False) -> ChatRequest:
    settings = ChatSettings(model="answer-model")
    if thinking:
        settings = ChatSettings(
            thinking=ThinkingSettings(enabled=True, thinking_model="thinking-model", answer_model="answer-model")
        )
    return ChatRequest(messages=[ChatMessage(role="user", content="Explain tides")], settings=settings)


def _stream(store, backend, request) -> ChatEventStream:
    return ChatEventStream(ChatOrchestrator(store, backend), store, request)


async def _collect(stream: ChatEventStream) -> list[tuple[str, dict]]:
    return [event async for event in stream.events()]


class TestEventSequence:
    async def test_thinking_turn_order(self, store):
        backend = FakeBackend(replies={"thinking-model": "Moon pulls water.", "answer-model": "Tides come from gravity."})
        events = await _collect(_stream(store, backend, _request(thinking=True)))
        names = [name for name, _ in events]

        assert names[0] == "status"
        first_answer = names.index("message_delta")
        assert names.index("thinking_complete") < first_answer
        assert set(names[1:names.index("thinking_complete")]) == {"thinking_delta"}
        assert names[-3:] == ["message_complete", "conversation", "done"]

        payloads = dict((name, payload) for name, payload in events if name not in ("thinking_delta", "message_delta"))
        assert payloads["thinking_complete"]["output"] == "Moon pulls water."
        assert payloads["thinking_complete"]["conversationId"] == payloads["done"]["conversationId"]
        assert payloads["conversation"]["id"] == payloads["done"]["conversationId"]

    async def test_message_deltas_concatenate_to_final_content(self, store):
        backend = FakeBackend(replies={"answer-model": "Tides rise and fall twice a day."})
        events = await _collect(_stream(store, backend, _request()))

        deltas = "".join(payload["delta"] for name, payload in events if name == "message_delta")
        complete = next(payload for name, payload in events if name == "message_complete")
        assert deltas == complete["content"] == "Tides rise and fall twice a day."
        assert complete["role"] == "assistant"

    async def test_no_thinking_events_without_thinking(self, store):
        events = await _collect(_stream(store, FakeBackend(), _request()))
        names = {name for name, _ in events}
        assert "thinking_delta" not in names
        assert "thinking_complete" not in names

    async def test_whitespace_thinking_tokens_suppressed(self, store):
        backend = FakeBackend(replies={"thinking-model": "   "})
        events = await _collect(_stream(store, backend, _request(thinking=True)))
        assert "thinking_delta" not in [name for name, _ in events]

    async def test_exactly_one_terminal_event(self, store):
        events = await _collect(_stream(store, FakeBackend(), _request()))
        assert [name for name, _ in events if name in TERMINAL_EVENTS] == ["done"]

    async def test_frames_are_sse_encoded(self, store):
        stream = _stream(store, FakeBackend(), _request())
        frames = [frame async for frame in stream.frames()]
        assert all(frame.endswith(b"\n\n") for frame in frames)
        first = parse_event_block(frames[0].decode("utf-8").strip())
        assert first == ("status", {"stage": "starting"})


class TestFailure:
    async def test_upstream_error_becomes_error_event(self, store):
        backend = FakeBackend(failing={"answer-model"})
        events = await _collect(_stream(store, backend, _request()))

        name, payload = events[-1]
        assert name == "error"
        assert payload["message"] == "Completion endpoint returned HTTP 500: boom"
        assert "message_complete" not in [n for n, _ in events]

        [conversation] = await store.list_conversations()
        assert [m.role for m in conversation.messages] == ["user"]

    def test_describe_error(self):
        assert describe_error(BackendUnavailableError("down")) == "down"
        assert describe_error(EndpointError(404, "")) == "Completion endpoint returned HTTP 404"
        assert describe_error(RuntimeError()) == "RuntimeError"


class TestCancellation:
    async def test_stop_after_first_thinking_delta(self, store):
        backend = FakeBackend(
            replies={"thinking-model": "Let me think about this slowly."},
            hang_after_first_token={"thinking-model"},
        )
        stream = _stream(store, backend, _request(thinking=True))

        names = []
        async for name, _ in stream.events():
            names.append(name)
            if name == "thinking_delta":
                stream.cancel_event.set()

        assert names[-1] == "stopped"
        assert "error" not in names
        assert "message_complete" not in names
        assert [call.model for call in backend.calls] == ["thinking-model"]

        [conversation] = await store.list_conversations()
        assert [m.role for m in conversation.messages] == ["user"]
        assert await store.list_thinking_runs() == {}

    async def test_stop_during_answer(self, store):
        backend = FakeBackend(hang_after_first_token={"answer-model"})
        stream = _stream(store, backend, _request())

        names = []
        async for name, _ in stream.events():
            names.append(name)
            if name == "message_delta":
                stream.cancel_event.set()

        assert names[-1] == "stopped"
        [conversation] = await store.list_conversations()
        assert all(m.role != "assistant" for m in conversation.messages)

    async def test_consumer_leaving_cancels_orchestration(self, store):
        backend = FakeBackend(hang_after_first_token={"answer-model"})
        stream = _stream(store, backend, _request())

        events = stream.events()
        async for name, _ in events:
            if name == "message_delta":
                break
        await events.aclose()

        assert stream.cancel_event.is_set()
        await asyncio.sleep(0)
        [conversation] = await store.list_conversations()
        assert all(m.role != "assistant" for m in conversation.messages)

    async def test_stop_after_answer_persisted_still_completes(self, store):
        stream = _stream(store, FakeBackend(), _request(thinking=True))
        insert_message = store.insert_message
        assistant_ids = []

        async def insert_then_stop(conversation_id, role, content, **kwargs):
            message_id = await insert_message(conversation_id, role, content, **kwargs)
            if role == "assistant":
                assistant_ids.append(message_id)
                stream.cancel_event.set()
                await asyncio.sleep(0)
            return message_id

        store.insert_message = insert_then_stop
        events = await _collect(stream)
        names = [name for name, _ in events]

        assert names[-3:] == ["message_complete", "conversation", "done"]
        assert "stopped" not in names
        assert dict(events)["message_complete"]["id"] == assistant_ids[0]
        [run] = (await store.list_thinking_runs())[dict(events)["done"]["conversationId"]]
        assert run.message_id == assistant_ids[0]


class TestGenerationRegistry:
    def test_cancel_sets_registered_event(self):
        registry = GenerationRegistry()
        event = asyncio.Event()
        stream_id = registry.register(event)

        assert len(registry) == 1
        assert registry.cancel(stream_id) is True
        assert event.is_set()

    def test_cancel_unknown_stream(self):
        assert GenerationRegistry().cancel("missing") is False

    def test_unregister(self):
        registry = GenerationRegistry()
        stream_id = registry.register(asyncio.Event())
        registry.unregister(stream_id)
        registry.unregister(stream_id)
        assert len(registry) == 0
        assert registry.cancel(stream_id) is False


class TestSnapshotFailure:
    async def test_done_still_sent_when_snapshot_read_fails(self, store):
        stream = _stream(store, FakeBackend(), _request())

        async def broken_get_conversation(conversation_id):
            raise RuntimeError("database is locked")

        store.get_conversation = broken_get_conversation
        names = [name for name, _ in await _collect(stream)]

        assert names[-2:] == ["message_complete", "done"]
        assert "conversation" not in names
        assert sum(name in TERMINAL_EVENTS for name in names) == 1
