from contextlib import aclosing

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from thinking_chat.core.exceptions import NotFoundError
from thinking_chat.dependencies import get_completion_backend, get_generation_registry
from thinking_chat.schemas.chat import ChatRequest, OrchestratorResult
from thinking_chat.services.conversations import ConversationStore
from thinking_chat.services.inference.base import CompletionBackend
from thinking_chat.services.orchestrator import ChatOrchestrator
from thinking_chat.services.settings_store import SettingsStore
from thinking_chat.services.streaming import ChatEventStream, GenerationRegistry

router = APIRouter()

_store = ConversationStore()
_settings_store = SettingsStore()

STREAM_ID_HEADER = "X-Chat-Stream-Id"


async def _resolve(body: ChatRequest) -> ChatRequest:
    chat_settings = await _settings_store.apply_defaults(body.settings)
    return body.model_copy(update={"settings": chat_settings})


@router.post("/api/chat")
async def chat(
    body: ChatRequest,
    backend: CompletionBackend = Depends(get_completion_backend),
    registry: GenerationRegistry = Depends(get_generation_registry),
) -> StreamingResponse:
    """Run one chat turn, streamed as server-sent events."""
    body = await _resolve(body)
    stream = ChatEventStream(ChatOrchestrator(_store, backend), _store, body)
    stream_id = registry.register(stream.cancel_event)

    async def event_generator():
        try:
            async with aclosing(stream.frames()) as frames:
                async for frame in frames:
                    yield frame
        finally:
            registry.unregister(stream_id)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={STREAM_ID_HEADER: stream_id, "Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/api/chat/complete")
async def chat_complete(
    body: ChatRequest,
    backend: CompletionBackend = Depends(get_completion_backend),
) -> OrchestratorResult:
    """Run one chat turn and return the result as a single JSON document."""
    body = await _resolve(body)
    return await ChatOrchestrator(_store, backend).run(body)


@router.post("/api/chat/{stream_id}/stop", status_code=202)
async def stop_chat(
    stream_id: str,
    registry: GenerationRegistry = Depends(get_generation_registry),
) -> dict:
    """Raise the cancel signal of an in-flight chat stream."""
    if not registry.cancel(stream_id):
        raise NotFoundError(f"No active chat stream {stream_id}.")
    return {"streamId": stream_id, "stopping": True}
