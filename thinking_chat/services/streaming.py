import asyncio
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing

import structlog

from thinking_chat.core.exceptions import ChatServiceError
from thinking_chat.schemas.chat import ChatRequest, OrchestratorResult
from thinking_chat.schemas.conversations import ThinkingRunResponse
from thinking_chat.services.conversations import ConversationStore
from thinking_chat.services.orchestrator import ChatOrchestrator
from thinking_chat.services.sse import format_event

logger = structlog.get_logger()

# Event vocabulary
STATUS = "status"
THINKING_DELTA = "thinking_delta"
THINKING_COMPLETE = "thinking_complete"
MESSAGE_DELTA = "message_delta"
MESSAGE_COMPLETE = "message_complete"
CONVERSATION = "conversation"
DONE = "done"
STOPPED = "stopped"
ERROR = "error"

TERMINAL_EVENTS = frozenset({DONE, STOPPED, ERROR})

_FINISHED = object()


def describe_error(exc: BaseException) -> str:
    """Human-readable message for a terminal ``error`` event."""
    if isinstance(exc, ChatServiceError):
        return exc.message
    return str(exc) or exc.__class__.__name__


class GenerationRegistry:
    """Cancel signals of in-flight chat streams, keyed by stream id."""

    def __init__(self):
        self._active: dict[str, asyncio.Event] = {}

    def register(self, cancel_event: asyncio.Event) -> str:
        stream_id = uuid.uuid4().hex
        self._active[stream_id] = cancel_event
        return stream_id

    def unregister(self, stream_id: str) -> None:
        self._active.pop(stream_id, None)

    def cancel(self, stream_id: str) -> bool:
        event = self._active.get(stream_id)
        if event is None:
            return False
        event.set()
        return True

    def __len__(self) -> int:
        return len(self._active)


class ChatEventStream:
    """Runs one orchestration and exposes it as a sequence of named events.

    Normal path:
        status → thinking_delta* → thinking_complete? → message_delta*
        → message_complete → conversation? → done
    Cancellation ends with ``stopped``, failure with ``error``. Exactly one
    terminal event is produced. Once the answer is about to be persisted the
    turn runs to completion, so ``stopped`` never follows a stored answer.

    Token sinks enqueue events as each upstream chunk arrives, so delta order
    matches arrival order. When the cancel signal fires, the orchestration
    task is cancelled, which aborts the in-flight upstream read.
    """

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        store: ConversationStore,
        request: ChatRequest,
        cancel_event: asyncio.Event | None = None,
    ):
        self._orchestrator = orchestrator
        self._store = store
        self._request = request
        self.cancel_event = cancel_event or asyncio.Event()
        self._committed = False

    async def events(self) -> AsyncIterator[tuple[str, dict]]:
        yield STATUS, {"stage": "starting"}

        queue: asyncio.Queue = asyncio.Queue()

        def on_thinking_token(token: str) -> None:
            if token.strip():
                queue.put_nowait((THINKING_DELTA, {"delta": token}))

        def on_answer_token(token: str) -> None:
            queue.put_nowait((MESSAGE_DELTA, {"delta": token}))

        def on_thinking_complete(run: ThinkingRunResponse) -> None:
            queue.put_nowait((THINKING_COMPLETE, run.to_wire()))

        def on_commit() -> None:
            self._committed = True

        task = asyncio.create_task(
            self._orchestrator.run(
                self._request,
                on_thinking_token=on_thinking_token,
                on_answer_token=on_answer_token,
                cancel_event=self.cancel_event,
                on_thinking_complete=on_thinking_complete,
                on_commit=on_commit,
            )
        )
        task.add_done_callback(lambda _: queue.put_nowait(_FINISHED))
        watcher = asyncio.create_task(self._cancel_when_signalled(task))

        try:
            while True:
                item = await queue.get()
                if item is _FINISHED:
                    break
                yield item

            async for event in self._outcome(task):
                yield event
        finally:
            watcher.cancel()
            if not task.done():
                # Consumer went away (client disconnect): abort upstream work
                self.cancel_event.set()
                if not self._committed:
                    task.cancel()

    async def frames(self) -> AsyncIterator[bytes]:
        async with aclosing(self.events()) as events:
            async for event, payload in events:
                yield format_event(event, payload)

    async def _cancel_when_signalled(self, task: asyncio.Task) -> None:
        await self.cancel_event.wait()
        if not task.done() and not self._committed:
            task.cancel()

    async def _outcome(self, task: asyncio.Task) -> AsyncIterator[tuple[str, dict]]:
        if task.cancelled():
            logger.info("chat_stream_stopped", conversation_id=self._request.conversation_id)
            yield STOPPED, {}
            return

        exc = task.exception()
        if exc is not None:
            # Before the commit point a signalled stop wins over however the task ended
            if self.cancel_event.is_set() and not self._committed:
                logger.info("chat_stream_stopped", conversation_id=self._request.conversation_id)
                yield STOPPED, {}
                return
            logger.warning(
                "orchestration_failed",
                conversation_id=self._request.conversation_id,
                error=describe_error(exc),
                error_type=exc.__class__.__name__,
            )
            yield ERROR, {"message": describe_error(exc)}
            return

        # A stop that arrives after the answer was committed is ignored
        result: OrchestratorResult = task.result()
        yield MESSAGE_COMPLETE, result.message.to_wire()

        try:
            conversation = await self._store.get_conversation(result.conversation_id)
        except Exception as e:
            logger.warning(
                "conversation_snapshot_failed",
                conversation_id=result.conversation_id,
                error=str(e),
            )
            conversation = None
        if conversation is not None:
            yield CONVERSATION, conversation.to_wire()

        yield DONE, {"conversationId": result.conversation_id}
