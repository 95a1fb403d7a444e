import asyncio

import httpx
import pytest

from thinking_chat.schemas.conversations import ConversationResponse
from thinking_chat.schemas.workspace import WorkspaceSnapshot
from thinking_chat.services.chat_session import ChatSession, iter_events
from thinking_chat.services.sse import format_event

CONVERSATION_ID = "conv-1"
NOW = "2024-05-01T12:00:00Z"


def _conversation(messages=None, title="Tides") -> dict:
    return {
        "id": CONVERSATION_ID,
        "title": title,
        "modelId": "answer-model",
        "modelLabel": "Answer Model",
        "createdAt": NOW,
        "updatedAt": NOW,
        "messages": messages or [],
    }


def _message(message_id: str, role: str, content: str) -> dict:
    return {
        "id": message_id,
        "conversationId": CONVERSATION_ID,
        "role": role,
        "content": content,
        "createdAt": NOW,
    }


THINKING_RUN = {
    "id": "run-1",
    "conversationId": CONVERSATION_ID,
    "modelId": "thinking-model",
    "output": "Moon pulls water.",
    "createdAt": NOW,
    "messageId": None,
}


def _happy_path_body() -> bytes:
    user = _message("m-1", "user", "Explain tides")
    answer = _message("m-2", "assistant", "Gravity.")
    events = [
        ("status", {"stage": "starting"}),
        ("thinking_delta", {"delta": "Moon "}),
        ("thinking_delta", {"delta": "pulls water."}),
        ("thinking_complete", THINKING_RUN),
        ("message_delta", {"delta": "Grav"}),
        ("message_delta", {"delta": "ity."}),
        ("message_complete", answer),
        ("conversation", _conversation([user, answer])),
        ("done", {"conversationId": CONVERSATION_ID}),
    ]
    return b"".join(format_event(name, payload) for name, payload in events)


def _session(handler, workspace=None) -> ChatSession:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    return ChatSession(client, workspace=workspace)


def _payload() -> dict:
    return {"messages": [{"role": "user", "content": "Explain tides"}], "settings": {"model": "answer-model"}}


class _Chunks(httpx.AsyncByteStream):
    def __init__(self, data: bytes, size: int):
        self._data = data
        self._size = size

    async def __aiter__(self):
        for i in range(0, len(self._data), self._size):
            yield self._data[i:i + self._size]


class _Hanging(httpx.AsyncByteStream):
    """Sends one event, then never finishes."""

    async def __aiter__(self):
        yield format_event("thinking_delta", {"delta": "still thinking"})
        await asyncio.Event().wait()


async def test_iter_events_across_chunk_boundaries():
    body = _happy_path_body()

    async def chunks():
        for i in range(0, len(body), 3):
            yield body[i:i + 3]

    names = [name async for name, _ in iter_events(chunks())]
    assert names[0] == "status"
    assert names[-1] == "done"
    assert len(names) == 9


class TestSendChat:
    async def test_folds_events_into_state(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=_Chunks(_happy_path_body(), 17))

        session = _session(handler)
        state = await session.send_chat(_payload())

        assert state.thinking == "Moon pulls water."
        assert state.message == "Gravity."
        assert state.is_streaming is False
        assert state.error is None

    async def test_reconciles_workspace(self):
        existing = ConversationResponse.model_validate(_conversation(title="Old"))
        other = ConversationResponse.model_validate({**_conversation(title="Other"), "id": "conv-0"})
        workspace = WorkspaceSnapshot(models=[], conversations=[other, existing], thinking_runs={})

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=_Chunks(_happy_path_body(), 64))

        session = _session(handler, workspace=workspace)
        await session.send_chat(_payload())

        assert [c.id for c in workspace.conversations] == ["conv-0", CONVERSATION_ID]
        updated = workspace.conversations[1]
        assert updated.title == "Tides"
        assert [m.id for m in updated.messages] == ["m-1", "m-2"]
        assert [run.id for run in workspace.thinking_runs[CONVERSATION_ID]] == ["run-1"]

    async def test_new_conversation_inserted_first(self):
        other = ConversationResponse.model_validate({**_conversation(title="Other"), "id": "conv-0"})
        workspace = WorkspaceSnapshot(models=[], conversations=[other], thinking_runs={})

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=_Chunks(_happy_path_body(), 64))

        await _session(handler, workspace=workspace).send_chat(_payload())
        assert [c.id for c in workspace.conversations] == [CONVERSATION_ID, "conv-0"]

    async def test_error_event_sets_error(self):
        body = format_event("status", {"stage": "starting"}) + format_event("error", {"message": "upstream down"})

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, stream=_Chunks(body, 32))

        state = await _session(handler).send_chat(_payload())
        assert state.error == "upstream down"

    async def test_http_error_raises_and_records(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, json={"detail": "invalid"})

        session = _session(handler)
        with pytest.raises(httpx.HTTPStatusError):
            await session.send_chat(_payload())
        assert session.state.is_streaming is False
        assert session.state.error

        session.reset_error()
        assert session.state.error is None

    async def test_posts_payload_to_chat_path(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, stream=_Chunks(_happy_path_body(), 64))

        await _session(handler).send_chat(_payload())
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/api/chat"

    async def test_new_send_aborts_previous_flight(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(200, stream=_Hanging())
            return httpx.Response(200, stream=_Chunks(_happy_path_body(), 64))

        session = _session(handler)
        first = asyncio.create_task(session.send_chat(_payload()))
        for _ in range(1000):
            if session.state.thinking:
                break
            await asyncio.sleep(0)
        first_state = session.state
        assert first_state.thinking == "still thinking"

        second_state = await session.send_chat(_payload())
        aborted_state = await first

        assert aborted_state is first_state
        assert aborted_state.is_streaming is False
        assert second_state.message == "Gravity."
        assert session.state is second_state

    async def test_stop_without_flight_is_noop(self):
        session = _session(lambda request: httpx.Response(200))
        await session.stop()
        assert session.state.is_streaming is False


class TestApplyEvent:
    def test_malformed_payload_ignored(self):
        session = ChatSession(httpx.AsyncClient(), workspace=WorkspaceSnapshot(models=[], conversations=[], thinking_runs={}))
        session.apply_event("thinking_complete", {"id": "x"})
        session.apply_event("message_complete", {})
        assert session.workspace.thinking_runs == {}

    def test_unknown_event_ignored(self):
        session = ChatSession(httpx.AsyncClient())
        session.apply_event("heartbeat", {"t": 1})
        assert session.state.message == ""

    def test_stopped_ends_streaming(self):
        session = ChatSession(httpx.AsyncClient())
        session.state.is_streaming = True
        session.apply_event("stopped", {})
        assert session.state.is_streaming is False

    def test_error_without_message(self):
        session = ChatSession(httpx.AsyncClient())
        session.apply_event("error", {})
        assert session.state.error == "Unknown error"
