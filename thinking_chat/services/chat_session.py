import asyncio
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass

import httpx
import structlog
from pydantic import ValidationError

from thinking_chat.schemas.chat import ChatRequest
from thinking_chat.schemas.conversations import ConversationResponse, MessageResponse, ThinkingRunResponse
from thinking_chat.schemas.workspace import WorkspaceSnapshot
from thinking_chat.services.sse import SSEBuffer, parse_event_block

logger = structlog.get_logger()


@dataclass
class StreamingState:
    is_streaming: bool = False
    message: str = ""
    thinking: str = ""
    error: str | None = None


async def iter_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[tuple[str, dict]]:
    """Decode a chat event byte stream into ``(event, data)`` pairs."""
    buffer = SSEBuffer()
    async for data in chunks:
        for block in buffer.feed(data):
            parsed = parse_event_block(block)
            if parsed is not None:
                yield parsed
    for block in buffer.flush():
        parsed = parse_event_block(block)
        if parsed is not None:
            yield parsed


@dataclass
class _Flight:
    task: asyncio.Task
    aborted: bool = False


class ChatSession:
    """Client side of the chat event stream.

    Folds events into a StreamingState and, when one is attached, a cached
    WorkspaceSnapshot. Single flight: starting a new chat aborts the one in
    progress.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        workspace: WorkspaceSnapshot | None = None,
        chat_path: str = "/api/chat",
    ):
        self._client = http_client
        self._chat_path = chat_path
        self.workspace = workspace
        self.state = StreamingState()
        self._flight: _Flight | None = None

    async def send_chat(self, payload: ChatRequest | dict) -> StreamingState:
        await self.stop()

        state = StreamingState(is_streaming=True)
        self.state = state
        flight = _Flight(task=asyncio.create_task(self._stream(payload, state)))
        self._flight = flight

        try:
            await flight.task
        except asyncio.CancelledError:
            if not flight.aborted:
                raise
            state.is_streaming = False
            return state
        except Exception as exc:
            state.is_streaming = False
            state.message = ""
            state.thinking = ""
            state.error = str(exc) or "Unknown error"
            raise
        finally:
            if self._flight is flight:
                self._flight = None

        state.is_streaming = False
        return state

    async def stop(self) -> None:
        """Abort the in-flight chat, if any, and wait for it to wind down."""
        flight = self._flight
        if flight is None or flight.task.done():
            return
        flight.aborted = True
        flight.task.cancel()
        await asyncio.wait({flight.task})

    def reset_error(self) -> None:
        self.state.error = None

    async def _stream(self, payload: ChatRequest | dict, state: StreamingState) -> None:
        body = payload.to_wire() if isinstance(payload, ChatRequest) else payload
        async with self._client.stream("POST", self._chat_path, json=body) as response:
            if response.is_error:
                await response.aread()
            response.raise_for_status()
            async for event, data in iter_events(response.aiter_bytes()):
                self.apply_event(event, data, state)

    def apply_event(self, event: str, data: dict, state: StreamingState | None = None) -> None:
        state = state or self.state
        try:
            self._apply(event, data, state)
        except ValidationError as exc:
            logger.debug("chat_event_malformed", chat_event=event, errors=exc.error_count())

    def _apply(self, event: str, data: dict, state: StreamingState) -> None:
        if event == "thinking_delta":
            state.thinking += str(data.get("delta", ""))
        elif event == "message_delta":
            state.message += str(data.get("delta", ""))
        elif event == "thinking_complete":
            self._upsert_thinking_run(ThinkingRunResponse.model_validate(data))
        elif event == "message_complete":
            message = MessageResponse.model_validate(data)
            state.message = message.content
            self._upsert_message(message)
        elif event == "conversation":
            self._upsert_conversation(ConversationResponse.model_validate(data))
        elif event == "error":
            message = data.get("message")
            state.error = message if isinstance(message, str) else "Unknown error"
        elif event in ("done", "stopped"):
            state.is_streaming = False
        else:
            logger.debug("chat_event_ignored", chat_event=event)

    # ── Workspace reconciliation ─────────────────────────────────────────────

    def _upsert_thinking_run(self, run: ThinkingRunResponse) -> None:
        if self.workspace is None:
            return
        existing = self.workspace.thinking_runs.get(run.conversation_id, [])
        self.workspace.thinking_runs[run.conversation_id] = [r for r in existing if r.id != run.id] + [run]

    def _upsert_message(self, message: MessageResponse) -> None:
        if self.workspace is None:
            return
        for conversation in self.workspace.conversations:
            if conversation.id == message.conversation_id:
                conversation.messages = [m for m in conversation.messages if m.id != message.id] + [message]
                return

    def _upsert_conversation(self, conversation: ConversationResponse) -> None:
        if self.workspace is None:
            return
        conversations = self.workspace.conversations
        index = next((i for i, c in enumerate(conversations) if c.id == conversation.id), None)
        if index is None:
            conversations.insert(0, conversation)
        else:
            conversations[index] = conversation
        self.workspace.thinking_runs.setdefault(conversation.id, [])
