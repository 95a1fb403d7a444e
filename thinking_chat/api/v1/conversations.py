from fastapi import APIRouter, Query

from thinking_chat.core.exceptions import NotFoundError
from thinking_chat.schemas.conversations import (
    ConversationCreate,
    ConversationResponse,
    ConversationSummary,
    ConversationUpdate,
)
from thinking_chat.services.conversations import ConversationStore

router = APIRouter()

_store = ConversationStore()


async def _get_or_404(conversation_id: str) -> ConversationResponse:
    conversation = await _store.get_conversation(conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found.")
    return conversation


@router.get("/api/conversations")
async def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> list[ConversationSummary]:
    """List conversations, most recently updated first."""
    return await _store.list_conversation_summaries(limit=limit, offset=offset)


@router.post("/api/conversations", status_code=201)
async def create_conversation(body: ConversationCreate) -> ConversationResponse:
    """Create an empty conversation."""
    conversation_id = await _store.create_conversation(body.title, body.model_id)
    return await _get_or_404(conversation_id)


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str) -> ConversationResponse:
    """Get a conversation with all its messages."""
    return await _get_or_404(conversation_id)


@router.patch("/api/conversations/{conversation_id}")
async def update_conversation(conversation_id: str, body: ConversationUpdate) -> ConversationResponse:
    """Rename a conversation and/or retarget its model."""
    await _get_or_404(conversation_id)
    if body.title is not None:
        await _store.update_conversation_title(conversation_id, body.title)
    if body.model_id is not None:
        await _store.update_conversation_model(conversation_id, body.model_id)
    return await _get_or_404(conversation_id)


@router.delete("/api/conversations/{conversation_id}", status_code=204)
async def delete_conversation(conversation_id: str) -> None:
    """Delete a conversation, its messages and its thinking runs."""
    await _store.delete_conversation(conversation_id)
